"""
Visualization Module for CFU Analysis
=====================================

Generates publication-quality figures of bacterial load:
1. Per-organ log10 CFUs/mL by group (box, violin or bar with points)
2. Tukey HSD significance brackets on each panel
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from config.cfu_schema import ORGAN_COL, GROUP_COL, CFU_PER_ML_COL, LOG10_CFU_PER_ML_COL
from modules.report_generation import get_significant_pairs
from modules.statistical_tests import ComprehensiveAnalysisResults

# Set publication-quality defaults
plt.rcParams.update({
    'font.family': 'sans-serif',
    'font.sans-serif': ['Arial', 'DejaVu Sans'],
    'font.size': 10,
    'axes.titlesize': 12,
    'axes.labelsize': 11,
    'xtick.labelsize': 9,
    'ytick.labelsize': 9,
    'legend.fontsize': 9,
    'figure.dpi': 150,
    'savefig.dpi': 300,
    'savefig.bbox': 'tight',
    'axes.spines.top': False,
    'axes.spines.right': False,
})

DEFAULT_PALETTE = "Set2"
LOAD_LABEL = 'log₁₀ CFUs/mL'


def get_group_palette(palette_name: str = "Set2", n_colors: int = 10):
    """Get a color palette by name."""
    return sns.color_palette(palette_name, n_colors)


class CFUVisualizer:
    """Generate visualizations of per-organ bacterial load."""

    def __init__(
        self,
        figsize_panel: Tuple[float, float] = (5, 4.5),
        color_palette: str = "Set2",
        style: str = "whitegrid",
        alpha: float = 0.05
    ):
        self.figsize_panel = figsize_panel
        self.palette_name = color_palette
        self.group_palette = get_group_palette(color_palette, 10)
        self.alpha = alpha
        sns.set_style(style)

    def _group_colors(self, groups: List[str]) -> Dict[str, tuple]:
        palette = get_group_palette(self.palette_name, max(len(groups), 1))
        return dict(zip(groups, palette))

    def plot_organ(
        self,
        organ_df: pd.DataFrame,
        ax: plt.Axes,
        title: Optional[str] = None,
        plot_type: str = "box",
        show_points: bool = True,
        significance_pairs: Optional[List[Tuple[str, str, str]]] = None
    ) -> plt.Axes:
        """Plot log10 load by group for one organ onto ``ax``."""
        data = organ_df[(organ_df[CFU_PER_ML_COL] > 0) & organ_df[GROUP_COL].notna()].copy()
        data[LOG10_CFU_PER_ML_COL] = np.log10(data[CFU_PER_ML_COL].astype(float))
        data[GROUP_COL] = data[GROUP_COL].astype(str)

        groups = sorted(data[GROUP_COL].unique())
        colors = self._group_colors(groups)

        if data.empty:
            ax.text(0.5, 0.5, 'No countable replicates', ha='center', va='center',
                    transform=ax.transAxes)
        elif plot_type == "bar":
            means = data.groupby(GROUP_COL)[LOG10_CFU_PER_ML_COL].mean()
            sems = data.groupby(GROUP_COL)[LOG10_CFU_PER_ML_COL].sem()
            x = range(len(groups))
            ax.bar(x, [means[g] for g in groups],
                   yerr=[0 if pd.isna(sems[g]) else sems[g] for g in groups],
                   capsize=4, color=[colors[g] for g in groups],
                   edgecolor='black', linewidth=0.5, alpha=0.8)
            if show_points:
                rng = np.random.default_rng(0)
                for i, g in enumerate(groups):
                    gdata = data.loc[data[GROUP_COL] == g, LOG10_CFU_PER_ML_COL]
                    jitter = rng.normal(0, 0.05, len(gdata))
                    ax.scatter(i + jitter, gdata, color='black', alpha=0.5, s=20, zorder=3)
            ax.set_xticks(list(x))
            ax.set_xticklabels(groups)
        elif plot_type == "violin":
            sns.violinplot(data=data, x=GROUP_COL, y=LOG10_CFU_PER_ML_COL, ax=ax,
                           hue=GROUP_COL, palette=colors, order=groups,
                           inner='box', legend=False)
            if show_points:
                sns.stripplot(data=data, x=GROUP_COL, y=LOG10_CFU_PER_ML_COL, ax=ax,
                              color='black', alpha=0.5, size=4, order=groups)
        else:
            sns.boxplot(data=data, x=GROUP_COL, y=LOG10_CFU_PER_ML_COL, ax=ax,
                        hue=GROUP_COL, palette=colors, order=groups, legend=False)
            if show_points:
                sns.stripplot(data=data, x=GROUP_COL, y=LOG10_CFU_PER_ML_COL, ax=ax,
                              color='black', alpha=0.5, size=4, order=groups)

        if significance_pairs and not data.empty:
            self._add_significance_bars(ax, groups, significance_pairs, data[LOG10_CFU_PER_ML_COL])

        ax.set_xlabel('')
        ax.set_ylabel(LOAD_LABEL)
        ax.set_title(title or '', fontsize=11, fontweight='bold')
        return ax

    def _add_significance_bars(self, ax, groups, pairs, values: pd.Series):
        """Add significance bars to plot."""
        y_max = values.max()
        y_range = values.max() - values.min()
        bar_height = (y_range if y_range > 0 else 1.0) * 0.05

        group_idx = {g: i for i, g in enumerate(groups)}
        # Shortest brackets lowest to minimise crossings
        pairs = sorted(pairs, key=lambda p: abs(group_idx.get(p[0], 0) - group_idx.get(p[1], 0)))

        drawn = 0
        for g1, g2, annotation in pairs:
            if g1 not in group_idx or g2 not in group_idx:
                continue
            drawn += 1
            x1, x2 = sorted((group_idx[g1], group_idx[g2]))
            y = y_max + drawn * bar_height * 2

            ax.plot([x1, x1, x2, x2], [y - bar_height / 2, y, y, y - bar_height / 2],
                    color='black', linewidth=1)
            ax.text((x1 + x2) / 2, y + bar_height / 4, annotation,
                    ha='center', va='bottom', fontsize=9)

        if drawn:
            ax.set_ylim(top=y_max + (drawn + 1) * bar_height * 2.5)

    def plot_organ_loads(
        self,
        joined: pd.DataFrame,
        results: Optional[ComprehensiveAnalysisResults] = None,
        organs: Optional[List[str]] = None,
        ncols: int = 2,
        plot_type: str = "box",
        show_points: bool = True,
        figsize: Optional[Tuple[float, float]] = None
    ) -> plt.Figure:
        """
        One panel per organ of log10 CFUs/mL by group.

        When ``results`` is given, Tukey contrasts with adjusted p below
        ``alpha`` are drawn as brackets.
        """
        if organs is None:
            organs = results.organ_order if results is not None else \
                list(dict.fromkeys(joined[ORGAN_COL].dropna()))
        n_plots = max(len(organs), 1)
        ncols = min(ncols, n_plots)
        nrows = int(np.ceil(n_plots / ncols))

        if figsize is None:
            figsize = (self.figsize_panel[0] * ncols, self.figsize_panel[1] * nrows)

        fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)
        axes = axes.flatten()

        for i, organ in enumerate(organs):
            organ_df = joined[joined[ORGAN_COL] == organ]
            pairs = []
            if results is not None:
                pairs = get_significant_pairs(results.organ_results.get(organ), self.alpha)
            self.plot_organ(organ_df, axes[i], title=organ, plot_type=plot_type,
                            show_points=show_points, significance_pairs=pairs)

        # Hide empty panels
        for i in range(len(organs), len(axes)):
            axes[i].set_visible(False)

        plt.tight_layout()
        return fig

    def save_figure(
        self,
        fig: plt.Figure,
        filepath: Union[str, Path],
        formats: List[str] = ['png', 'pdf'],
        dpi: int = 300
    ) -> List[Path]:
        """Save figure in multiple formats."""
        filepath = Path(filepath)
        saved = []
        for fmt in formats:
            save_path = filepath.with_suffix(f'.{fmt}')
            fig.savefig(save_path, format=fmt, dpi=dpi, bbox_inches='tight')
            saved.append(save_path)
        return saved
