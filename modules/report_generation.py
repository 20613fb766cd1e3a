"""
Report Generation Module for CFU Analysis
=========================================

Generates organized Excel workbooks with:
- An overview of the run (organs, settings, replicate counts)
- The tidy replicate table in output format
- Per-organ, per-group load summaries
- ANOVA and Tukey HSD results, plus organs that could not be analysed

Also provides the summary tables the Streamlit app displays.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from config.cfu_schema import (
    ORGAN_COL, GROUP_COL, MOUSE_COL, CFU_COL, CFU_PER_ML_COL, STAT_RESULT_COLUMNS,
)
from config.pipeline_settings import PipelineSettings, DEFAULT_SETTINGS
from modules.data_processing import to_output_table
from modules.statistical_tests import ComprehensiveAnalysisResults, OrganAnalysisResult

logger = logging.getLogger(__name__)


def p_to_stars(p: float, alpha: float = 0.05) -> str:
    """Significance annotation for a p-value."""
    if pd.isna(p) or p >= alpha:
        return ''
    if p < 0.001:
        return '***'
    if p < 0.01:
        return '**'
    return '*'


def summarize_loads(joined_df: pd.DataFrame) -> pd.DataFrame:
    """
    Per organ and group: replicate and mouse counts, log10 load mean/SD,
    geometric mean, and raw load range. Organ order follows the table.
    """
    columns = ['organ', 'group', 'n_replicates', 'n_mice', 'mean_log10_CFUs_per_mL',
               'sd_log10_CFUs_per_mL', 'geometric_mean_CFUs_per_mL',
               'min_CFUs_per_mL', 'max_CFUs_per_mL']
    if joined_df.empty:
        return pd.DataFrame(columns=columns)

    data = joined_df.copy()
    positive = data[CFU_PER_ML_COL] > 0
    data['_log10'] = np.where(positive, np.log10(data[CFU_PER_ML_COL].where(positive, 1.0)), np.nan)

    summary = data.groupby([ORGAN_COL, GROUP_COL], sort=False).agg(
        n_replicates=(CFU_COL, 'size'),
        n_mice=(MOUSE_COL, 'nunique'),
        mean_log10_CFUs_per_mL=('_log10', 'mean'),
        sd_log10_CFUs_per_mL=('_log10', 'std'),
        min_CFUs_per_mL=(CFU_PER_ML_COL, 'min'),
        max_CFUs_per_mL=(CFU_PER_ML_COL, 'max'),
    ).reset_index()
    summary['geometric_mean_CFUs_per_mL'] = 10 ** summary['mean_log10_CFUs_per_mL']
    return summary[columns]


def format_stat_table(results: ComprehensiveAnalysisResults, alpha: float = 0.05) -> pd.DataFrame:
    """StatResult table with a readable contrast label and significance stars."""
    table = results.stat_results_table()
    if table.empty:
        return pd.DataFrame(columns=STAT_RESULT_COLUMNS + ['contrast', 'significance'])
    table['contrast'] = table['contrast_group_a'] + ' - ' + table['contrast_group_b']
    table['significance'] = table['adjusted_p_value'].map(lambda p: p_to_stars(p, alpha))
    return table


def get_significant_pairs(
    result: Optional[OrganAnalysisResult],
    alpha: float = 0.05,
    max_pairs: Optional[int] = None
) -> List[Tuple[str, str, str]]:
    """
    Significant Tukey contrasts of one organ as (group_a, group_b, stars),
    most significant first. Used for plot brackets.
    """
    if result is None:
        return []
    significant = sorted(
        (c for c in result.contrasts if c.adjusted_p_value < alpha),
        key=lambda c: c.adjusted_p_value
    )
    if max_pairs is not None:
        significant = significant[:max_pairs]
    return [(c.contrast_group_a, c.contrast_group_b, p_to_stars(c.adjusted_p_value, alpha))
            for c in significant]


class ExcelReportGenerator:
    """
    Generate an Excel report of one pipeline run.

    Sheets:
    1. Overview: run parameters and replicate counts per organ
    2. Tidy_Data: the output table (one row per surviving replicate)
    3. Load_Summary: per organ/group load summaries
    4. Statistics: Tukey HSD contrasts
    5. ANOVA: per-organ F tests
    6. Not_Analyzed: organs without enough data (only when present)
    """

    def __init__(
        self,
        joined: pd.DataFrame,
        results: ComprehensiveAnalysisResults,
        settings: Optional[PipelineSettings] = None,
        source_name: Optional[str] = None
    ):
        """
        Initialize report generator.

        Args:
            joined: TidyReplicate table
            results: Per-organ statistics
            settings: Settings the run used
            source_name: Name of the source workbook, shown in the overview
        """
        self.joined = joined.copy()
        self.results = results
        self.settings = settings or DEFAULT_SETTINGS
        self.source_name = source_name

    def _overview(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        s = self.settings
        parameters = pd.DataFrame({
            'Parameter': ['Source workbook', 'Organs', 'Countable range (CFUs)',
                          'Control group', 'Replicates', 'Confidence level', 'Significance level'],
            'Value': [
                self.source_name or '',
                ', '.join(self.results.organ_order),
                f"{s.countable_min:g} - {s.countable_max:g}",
                s.control_group,
                len(self.joined),
                f"{s.confidence_level:.0%}",
                f"α = {s.alpha}",
            ]
        })

        rows = []
        for organ in self.results.organ_order:
            organ_df = self.joined[self.joined[ORGAN_COL] == organ]
            if organ in self.results.organ_results:
                result = self.results.organ_results[organ]
                sig = [f"{a} vs {b}" for a, b, _ in get_significant_pairs(result, s.alpha)]
                status = 'Analysed'
                p = f"{result.anova.pvalue:.6f}"
            else:
                sig = []
                status = 'Not analysed'
                p = 'N/A'
            rows.append({
                'Organ': organ,
                'Replicates': len(organ_df),
                'Groups': organ_df[GROUP_COL].nunique(),
                'Status': status,
                'ANOVA P-value': p,
                'Significant Comparisons': '; '.join(sig) if sig else 'None',
            })
        return parameters, pd.DataFrame(rows)

    def save_excel_report(self, filepath) -> Path:
        """Save the complete Excel report. ``filepath`` may be a path or a buffer."""
        with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
            parameters, organ_rows = self._overview()
            parameters.to_excel(writer, sheet_name='Overview', index=False)
            organ_rows.to_excel(writer, sheet_name='Overview', startrow=len(parameters) + 2, index=False)

            to_output_table(self.joined).to_excel(writer, sheet_name='Tidy_Data', index=False)
            summarize_loads(self.joined).to_excel(writer, sheet_name='Load_Summary', index=False)
            format_stat_table(self.results, self.settings.alpha).to_excel(
                writer, sheet_name='Statistics', index=False)
            self.results.anova_table().to_excel(writer, sheet_name='ANOVA', index=False)

            if self.results.organ_errors:
                self.results.errors_table().to_excel(writer, sheet_name='Not_Analyzed', index=False)

        logger.info(f"Saved Excel report to {filepath}")
        return filepath
