"""
End-to-end CFU pipeline.

Run from the command line:
    python -m modules.pipeline counts.xlsx --output tidy_cfus.csv --report report.xlsx
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from config.pipeline_settings import PipelineSettings, DEFAULT_SETTINGS, get_settings, get_available_presets
from modules.data_processing import CFUDataProcessor, ProcessedData, validate_data_quality, write_output
from modules.errors import CFUPipelineError
from modules.logger import setup_logging
from modules.report_generation import ExcelReportGenerator
from modules.statistical_tests import (
    ComprehensiveAnalysisResults, OrganStatisticalAnalyzer, format_analysis_report,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one run produced."""
    processed: ProcessedData
    analysis: ComprehensiveAnalysisResults
    quality: Dict[str, Any]
    output_path: Optional[Path] = None

    @property
    def joined(self) -> pd.DataFrame:
        return self.processed.joined

    @property
    def stat_results(self) -> pd.DataFrame:
        return self.analysis.stat_results_table()


def run_pipeline(
    workbook_path: Union[str, Path],
    sheet_names: Optional[List[str]] = None,
    settings: Optional[PipelineSettings] = None,
    output_path: Optional[Union[str, Path]] = None
) -> PipelineResult:
    """
    Load, reshape, union, filter, join and analyse one workbook.

    Load/schema/type errors propagate; per-organ insufficient data is
    collected in ``result.analysis.organ_errors``.
    """
    settings = settings or DEFAULT_SETTINGS
    processor = CFUDataProcessor(settings=settings)
    processed = processor.load_and_process(workbook_path, sheet_names)

    # Organs without metadata have no joined rows; they are not reported as insufficient
    known = {m.organ for m in processed.workbook.metadata}
    organs = [o for o in processed.workbook.organs if o in known]

    analyzer = OrganStatisticalAnalyzer(settings=settings)
    analysis = analyzer.analyze(processed.joined, organs=organs)

    written = write_output(processed.joined, output_path) if output_path else None
    return PipelineResult(
        processed=processed,
        analysis=analysis,
        quality=validate_data_quality(processed),
        output_path=written,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert plate counts to CFUs/mL and compare groups per organ."
    )
    parser.add_argument("workbook", help="Excel/ODS workbook with a 'metadata' sheet and one sheet per organ")
    parser.add_argument("--sheets", nargs="+", default=None,
                        help="Organ sheets to process, in report order (default: all)")
    parser.add_argument("--preset", default="standard", choices=get_available_presets(),
                        help="Countable-range preset")
    parser.add_argument("--output", default=None, help="Tidy replicate table (.csv or .xlsx)")
    parser.add_argument("--report", default=None, help="Excel statistical report (.xlsx)")
    parser.add_argument("--figure", default=None, help="Per-organ load figure (saved as .png and .pdf)")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    settings = get_settings(args.preset)

    try:
        result = run_pipeline(args.workbook, args.sheets, settings, args.output)
    except CFUPipelineError as e:
        logger.error(str(e))
        return 1

    if args.report:
        ExcelReportGenerator(result.joined, result.analysis, settings,
                             source_name=Path(args.workbook).name).save_excel_report(args.report)
    if args.figure:
        from modules.visualization import CFUVisualizer
        viz = CFUVisualizer(color_palette=settings.color_palette, alpha=settings.alpha)
        fig = viz.plot_organ_loads(result.joined, result.analysis, plot_type=settings.plot_type)
        viz.save_figure(fig, args.figure)

    print(format_analysis_report(result.analysis))
    return 0


if __name__ == "__main__":
    sys.exit(main())
