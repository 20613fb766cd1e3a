import matplotlib
matplotlib.use("Agg")

import openpyxl
import pandas as pd
import pytest

from config.cfu_schema import OUTPUT_COLUMNS, TIDY_COLUMNS
from config.pipeline_settings import get_settings
from modules.data_processing import write_output
from modules.pipeline import main, run_pipeline
from modules.report_generation import ExcelReportGenerator, format_stat_table, summarize_loads
from modules.visualization import CFUVisualizer

from conftest import METADATA, lung_sheet, spleen_sheet


def test_end_to_end_lung_and_spleen(workbook_path):
    result = run_pipeline(workbook_path)

    joined = result.joined
    assert list(joined.columns) == TIDY_COLUMNS
    assert joined["organ"].tolist() == ["lung"] * 8 + ["spleen"] * 6

    stats_table = result.stat_results
    assert stats_table["organ"].tolist() == ["lung", "spleen"]
    assert stats_table[["contrast_group_a", "contrast_group_b"]].values.tolist() == [
        ["group_1", "group_2"], ["group_1", "group_2"],
    ]
    assert result.analysis.organ_results["lung"].excluded_groups == {"control": 1}
    assert not result.analysis.organ_errors


def test_lung_load_values(workbook_path):
    joined = run_pipeline(workbook_path).joined
    mouse_1 = joined[(joined["organ"] == "lung") & (joined["mouse"] == "1")]
    # 50 * 10**1 * (1.0 / 10) * 1000 and 6 * 10**2 * (1.0 / 10) * 1000
    assert mouse_1["CFUs_per_mL"].tolist() == pytest.approx([50000.0, 60000.0])


def test_insufficient_organ_does_not_hide_other_results(make_workbook):
    spleen = spleen_sheet().assign(group="group_1")
    path = make_workbook({"metadata": METADATA, "lung": lung_sheet(), "spleen": spleen})

    result = run_pipeline(path)

    assert list(result.analysis.organ_errors) == ["spleen"]
    assert result.stat_results["organ"].unique().tolist() == ["lung"]


def test_sheet_without_metadata_is_dropped(make_workbook):
    path = make_workbook({
        "metadata": METADATA, "lung": lung_sheet(), "kidney": spleen_sheet(),
    })

    result = run_pipeline(path)

    assert set(result.joined["organ"]) == {"lung"}
    assert result.analysis.organ_order == ["lung"]
    assert result.quality["organs_without_metadata"] == ["kidney"]
    assert result.quality["n_unmatched_replicates"] == 6


def test_selected_sheets_only(workbook_path):
    result = run_pipeline(workbook_path, ["spleen"])
    assert set(result.joined["organ"]) == {"spleen"}
    assert result.analysis.organ_order == ["spleen"]


def test_settings_change_filter_window(workbook_path):
    settings = get_settings("standard").with_overrides(countable_min=30, countable_max=95)
    result = run_pipeline(workbook_path, ["lung"], settings=settings)
    assert sorted(result.joined["CFUs"].tolist()) == [2.0, 30.0, 40.0, 50.0, 80.0]


def test_quality_report_counts(workbook_path):
    quality = run_pipeline(workbook_path).quality
    assert quality["n_long_rows"] == {"lung": 10, "spleen": 7}
    assert quality["n_tntc_cells"] == {"lung": 1, "spleen": 0}
    assert quality["n_removed_by_filter"] == 3
    assert quality["n_unmatched_replicates"] == 0
    assert quality["n_mice_with_multiple_dilutions"] == 3


@pytest.mark.parametrize("name", ["tidy.csv", "tidy.xlsx"])
def test_write_output_uses_output_column_names(workbook_path, tmp_path, name):
    joined = run_pipeline(workbook_path).joined
    path = write_output(joined, tmp_path / name)

    if name.endswith(".csv"):
        written = pd.read_csv(path)
    else:
        written = pd.read_excel(path)
    assert list(written.columns) == OUTPUT_COLUMNS
    assert len(written) == 14


def test_run_pipeline_writes_output(workbook_path, tmp_path):
    result = run_pipeline(workbook_path, output_path=tmp_path / "out.csv")
    assert result.output_path.exists()


def test_summarize_loads(workbook_path):
    summary = summarize_loads(run_pipeline(workbook_path, ["lung"]).joined)
    lung = summary.set_index("group")
    assert lung.loc["group_1", "n_replicates"] == 4
    assert lung.loc["group_1", "n_mice"] == 3
    assert lung.loc["group_2", "n_replicates"] == 3
    assert lung.loc["control", "n_replicates"] == 1


def test_format_stat_table_labels(workbook_path):
    table = format_stat_table(run_pipeline(workbook_path).analysis)
    assert table["contrast"].tolist() == ["group_1 - group_2"] * 2


def test_excel_report_sheets(make_workbook, tmp_path):
    spleen = spleen_sheet().assign(group="group_1")
    path = make_workbook({"metadata": METADATA, "lung": lung_sheet(), "spleen": spleen})
    result = run_pipeline(path)

    report = ExcelReportGenerator(result.joined, result.analysis, source_name="counts.xlsx")
    out = report.save_excel_report(tmp_path / "report.xlsx")

    wb = openpyxl.load_workbook(out)
    assert wb.sheetnames == ["Overview", "Tidy_Data", "Load_Summary", "Statistics",
                             "ANOVA", "Not_Analyzed"]


def test_visualizer_builds_and_saves_figure(workbook_path, tmp_path):
    result = run_pipeline(workbook_path)
    viz = CFUVisualizer()

    fig = viz.plot_organ_loads(result.joined, result.analysis)
    assert len([ax for ax in fig.axes if ax.get_visible()]) >= 2

    saved = viz.save_figure(fig, tmp_path / "loads", formats=["png"], dpi=50)
    assert saved[0].exists()


@pytest.fixture
def quiet_cli(monkeypatch):
    # keep the CLI from attaching handlers to the captured stderr
    monkeypatch.setattr("modules.pipeline.setup_logging", lambda *args, **kwargs: None)


def test_cli_success(workbook_path, tmp_path, capsys, quiet_cli):
    out = tmp_path / "tidy.csv"
    report = tmp_path / "report.xlsx"
    code = main([str(workbook_path), "--output", str(out), "--report", str(report)])

    assert code == 0
    assert out.exists() and report.exists()
    assert "ORGAN: lung" in capsys.readouterr().out


def test_cli_load_failure_returns_error_code(tmp_path, quiet_cli):
    assert main([str(tmp_path / "missing.xlsx")]) == 1


def test_empty_sheet_selection_produces_nothing_to_analyse(workbook_path):
    result = run_pipeline(workbook_path, [])
    assert result.joined.empty
    assert list(result.joined.columns) == TIDY_COLUMNS
    assert result.analysis.organ_order == []
    assert result.stat_results.empty
