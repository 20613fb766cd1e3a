"""
CFU Analysis Pipeline - Streamlit Application
=============================================

Run with: streamlit run app.py
"""

import streamlit as st
import pandas as pd
import matplotlib.pyplot as plt
from io import BytesIO
from pathlib import Path
import os
import tempfile
import zipfile
from datetime import datetime

from config.cfu_schema import METADATA_SHEET
from config.pipeline_settings import get_settings, get_preset_display_names
from modules.data_processing import CFUDataProcessor, validate_data_quality, to_output_table
from modules.errors import CFUPipelineError
from modules.logger import setup_logging
from modules.statistical_tests import (
    OrganStatisticalAnalyzer, ComprehensiveAnalysisResults, format_analysis_report,
)
from modules.visualization import CFUVisualizer
from modules.report_generation import (
    ExcelReportGenerator, summarize_loads, format_stat_table,
)

st.set_page_config(page_title="CFU Analysis Pipeline", page_icon="🧫", layout="wide")
setup_logging("INFO")

PALETTES = ["Set2", "Set1", "Dark2", "colorblind", "tab10"]
PLOT_STYLES = ["whitegrid", "white", "ticks"]
SESSION_DEFAULTS = {
    'processed_data': None,
    'analysis_results': ComprehensiveAnalysisResults(),
    'figures': {},
    'stats_computed': False,
    'last_file': None,
    'last_settings': None,  # see settings_fingerprint
}


def init_session_state():
    for key, val in SESSION_DEFAULTS.items():
        st.session_state.setdefault(key, val)


def reset_cached_results():
    st.session_state.stats_computed = False
    st.session_state.figures = {}


def settings_fingerprint(settings):
    """Settings that change the tidy table or the statistics."""
    return settings['pipeline'].analysis_key() + (tuple(settings['sheets'] or ()),)


def check_settings_changed(settings):
    """True (and caches cleared) when the fingerprint moved since the last run."""
    current = settings_fingerprint(settings)
    if st.session_state.last_settings == current:
        return False
    reset_cached_results()
    st.session_state.last_settings = current
    return True


def fig_to_bytes(fig, fmt='png', dpi=300):
    out = BytesIO()
    fig.savefig(out, format=fmt, dpi=dpi, bbox_inches='tight')
    return out.getvalue()


def compute_all_statistics(processed, settings):
    """Per-organ statistics, computed once per data/settings change."""
    if not st.session_state.stats_computed:
        known = {m.organ for m in processed.workbook.metadata}
        organs = [o for o in processed.workbook.organs if o in known]
        analyzer = OrganStatisticalAnalyzer(settings=settings['pipeline'])
        st.session_state.analysis_results = analyzer.analyze(processed.joined, organs=organs)
        st.session_state.stats_computed = True
    return st.session_state.analysis_results


def create_results_zip(processed, results, figures, settings, source_name):
    """Tidy table, summaries, reports and figures in one archive."""
    archive = BytesIO()
    report = BytesIO()
    ExcelReportGenerator(processed.joined, results, settings['pipeline'],
                         source_name=source_name).save_excel_report(report)

    with zipfile.ZipFile(archive, 'w', zipfile.ZIP_DEFLATED) as zf:
        zf.writestr('data/tidy_cfus.csv', to_output_table(processed.joined).to_csv(index=False))
        zf.writestr('data/load_summary.csv', summarize_loads(processed.joined).to_csv(index=False))
        zf.writestr('data/tukey_contrasts.csv', results.stat_results_table().to_csv(index=False))
        zf.writestr('reports/analysis_report.txt', format_analysis_report(results))
        zf.writestr('reports/cfu_report.xlsx', report.getvalue())
        for name, fig in figures.items():
            for fmt in ('png', 'pdf'):
                zf.writestr(f'figures/{name}.{fmt}', fig_to_bytes(fig, fmt))
    return archive.getvalue()


def render_sidebar(available_sheets=None):
    """Counting, statistics and plot settings."""
    st.sidebar.header("Counting")

    preset_options = get_preset_display_names()
    preset_key = st.sidebar.selectbox("Counting preset", list(preset_options.keys()),
                                      format_func=lambda x: preset_options[x])
    preset = get_settings(preset_key)
    st.sidebar.caption(preset.description)

    countable_min, countable_max = st.sidebar.slider(
        "Countable range (CFUs per plate)", 0, 400,
        (int(preset.countable_min), int(preset.countable_max))
    )
    control_group = st.sidebar.text_input("Control group (always kept)", preset.control_group)

    sheets = None
    if available_sheets:
        organ_sheets = [s for s in available_sheets if s.strip().lower() != METADATA_SHEET]
        sheets = st.sidebar.multiselect("Organ sheets (in report order)", organ_sheets, organ_sheets)

    st.sidebar.header("Statistics")
    confidence = st.sidebar.slider("Tukey confidence level", 0.80, 0.99, preset.confidence_level, 0.01)
    alpha = st.sidebar.slider("Significance (α)", 0.01, 0.10, preset.alpha, 0.01)

    st.sidebar.header("Plots")
    plot_type = st.sidebar.radio("Panel type", ["box", "violin", "bar"], horizontal=True)
    show_points = st.sidebar.checkbox("Overlay replicates", True)
    color_palette = st.sidebar.selectbox("Group colours", PALETTES)
    plot_style = st.sidebar.selectbox("Background", PLOT_STYLES)

    pipeline_settings = preset.with_overrides(
        countable_min=countable_min, countable_max=countable_max,
        control_group=control_group.strip(), confidence_level=confidence, alpha=alpha,
        plot_type=plot_type, color_palette=color_palette,
    )
    return {'pipeline': pipeline_settings, 'sheets': sheets, 'show_points': show_points,
            'plot_style': plot_style}


def render_data_tab(processed, settings):
    """Tidy replicate table."""
    st.markdown("### Tidy Replicates")
    quality = validate_data_quality(processed)

    c1, c2, c3 = st.columns(3)
    c1.metric("Replicates read", quality['n_unioned'])
    c2.metric("Removed (not countable)", quality['n_removed_by_filter'])
    c3.metric("Joined replicates", quality['n_joined'])

    if quality['organs_without_metadata']:
        st.info("Organ sheet(s) without a metadata row are not part of the output: "
                + ', '.join(quality['organs_without_metadata']))

    st.dataframe(to_output_table(processed.joined), use_container_width=True, hide_index=True)

    with st.expander("📋 Replicates per organ"):
        counts = pd.DataFrame({
            'Rows in sheet': quality['n_raw_rows'],
            'Long replicates': quality['n_long_rows'],
            'TNTC cells': quality['n_tntc_cells'],
        })
        st.dataframe(counts, use_container_width=True)


def render_loads_tab(processed, settings):
    """Per-organ load plots."""
    st.markdown("### Bacterial Load by Group")
    results = st.session_state.analysis_results
    s = settings['pipeline']

    viz = CFUVisualizer(color_palette=s.color_palette, style=settings['plot_style'], alpha=s.alpha)
    fig = viz.plot_organ_loads(processed.joined, results, plot_type=s.plot_type,
                               show_points=settings['show_points'])
    st.pyplot(fig)
    st.session_state.figures['organ_loads'] = fig
    plt.close(fig)

    with st.expander("📈 Load summary"):
        st.dataframe(summarize_loads(processed.joined), use_container_width=True, hide_index=True)


def render_statistics_tab(processed, settings):
    """Statistics summary tab."""
    st.markdown("### One-way ANOVA and Tukey HSD per Organ")
    results = st.session_state.analysis_results
    s = settings['pipeline']

    c1, c2 = st.columns(2)
    c1.metric("Organs analysed", f"{len(results.organ_results)}/{len(results.organ_order)}")
    n_sig = int((results.stat_results_table()['adjusted_p_value'] < s.alpha).sum()) \
        if results.organ_results else 0
    c2.metric("Significant contrasts", n_sig)

    for organ, err in results.organ_errors.items():
        st.warning(f"**{organ}** not analysed: {err.reason}")

    st.markdown("#### ANOVA")
    st.dataframe(results.anova_table(), hide_index=True)

    st.markdown(f"#### Tukey HSD contrasts ({s.confidence_level:.0%} CI)")
    st.dataframe(format_stat_table(results, s.alpha), hide_index=True)

    with st.expander("📄 Text report"):
        st.text(format_analysis_report(results))


def render_export_tab(processed, settings, source_name):
    """Export tab."""
    st.markdown("### Export Results")
    results = st.session_state.analysis_results

    col1, col2 = st.columns(2)
    with col1:
        st.markdown("#### Individual Downloads")
        st.download_button("📥 Tidy replicates (CSV)",
                           to_output_table(processed.joined).to_csv(index=False),
                           "tidy_cfus.csv", "text/csv")
        st.download_button("📥 Tukey contrasts (CSV)",
                           results.stat_results_table().to_csv(index=False),
                           "tukey_contrasts.csv", "text/csv")

    with col2:
        buf = BytesIO()
        ExcelReportGenerator(processed.joined, results, settings['pipeline'],
                             source_name=source_name).save_excel_report(buf)
        buf.seek(0)
        st.download_button("📥 Statistical Report (Excel)", buf.getvalue(),
                           f"cfu_report_{datetime.now():%Y%m%d}.xlsx",
                           "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")

    st.markdown("---")
    if st.button("📦 Generate Complete Package", type="primary"):
        with st.spinner("Creating ZIP..."):
            zip_bytes = create_results_zip(processed, results, st.session_state.figures,
                                           settings, source_name)
            st.download_button("📥 Download ZIP", zip_bytes,
                               f"cfu_analysis_{datetime.now():%Y%m%d_%H%M}.zip", "application/zip")


def main():
    """Main entry point."""
    init_session_state()

    st.markdown("# 🧫 CFU Analysis Pipeline")
    uploaded = st.file_uploader("Upload Excel/ODS workbook", ['xlsx', 'xls', 'ods'])

    tmp_path = None
    available_sheets = None
    if uploaded:
        with tempfile.NamedTemporaryFile(delete=False, suffix=Path(uploaded.name).suffix) as tmp:
            tmp.write(uploaded.getvalue())
            tmp_path = tmp.name
        try:
            available_sheets = CFUDataProcessor().get_available_sheets(tmp_path)
        except CFUPipelineError as e:
            st.error(f"Error: {e}")
            os.unlink(tmp_path)
            return

    settings = render_sidebar(available_sheets)

    if uploaded:
        file_changed = st.session_state.last_file != uploaded.name
        if file_changed:
            reset_cached_results()
            st.session_state.last_file = uploaded.name
            st.session_state.last_settings = None

        settings_changed = check_settings_changed(settings)

        if settings['sheets'] is not None and not settings['sheets']:
            os.unlink(tmp_path)
            st.session_state.processed_data = None
            st.info("No organ sheet selected; pick at least one in the sidebar.")
            return

        try:
            if file_changed or settings_changed or st.session_state.processed_data is None:
                with st.spinner("Processing data..." + (" (settings changed)" if settings_changed else "")):
                    processor = CFUDataProcessor(settings=settings['pipeline'])
                    processed = processor.load_and_process(tmp_path, settings['sheets'])
                    st.session_state.processed_data = processed
                    st.success("✅ Data loaded!")
        except CFUPipelineError as e:
            st.session_state.processed_data = None
            st.error(f"Error: {e}")
            return
        finally:
            os.unlink(tmp_path)

    if st.session_state.processed_data:
        processed = st.session_state.processed_data
        s = settings['pipeline']
        st.caption(f"📊 Countable range: **{s.countable_min:g}-{s.countable_max:g} CFUs** | "
                   f"control group: **{s.control_group}** | α = **{s.alpha}**")

        with st.spinner("Computing statistics..."):
            compute_all_statistics(processed, settings)

        source_name = st.session_state.last_file
        tabs = st.tabs(["📋 Data", "📈 Loads", "📊 Statistics", "💾 Export"])
        with tabs[0]: render_data_tab(processed, settings)
        with tabs[1]: render_loads_tab(processed, settings)
        with tabs[2]: render_statistics_tab(processed, settings)
        with tabs[3]: render_export_tab(processed, settings, source_name)


if __name__ == "__main__":
    main()
