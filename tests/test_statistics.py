import numpy as np
import pandas as pd
import pytest
from scipy import stats

from config.cfu_schema import STAT_RESULT_COLUMNS
from modules.errors import InsufficientDataError, NumericTypeError
from modules.statistical_tests import OrganStatisticalAnalyzer, format_analysis_report


def three_group_table(organ="lung"):
    loads = {
        "a": [1e3, 2e3, 5e3, 1e4],
        "b": [1e5, 3e5, 2e5, 8e5],
        "c": [1e4, 2e4, 4e4, 5e4],
    }
    rows = []
    for group, values in loads.items():
        for i, v in enumerate(values):
            rows.append({"organ": organ, "group": group, "mouse": f"{group}{i}",
                         "dilution_level": 1, "CFUs": 10.0, "CFUs_per_mL": v})
    return pd.DataFrame(rows)


def test_two_groups_estimate_interval_and_pvalue(joined_two_groups):
    result = OrganStatisticalAnalyzer().analyze_organ(joined_two_groups, "lung")

    assert result.groups == ["a", "b"]
    assert len(result.contrasts) == 1
    contrast = result.contrasts[0]
    assert (contrast.contrast_group_a, contrast.contrast_group_b) == ("a", "b")
    assert contrast.estimate == pytest.approx(-2.0)
    assert contrast.confidence_low < contrast.estimate < contrast.confidence_high
    assert 0.0 <= contrast.adjusted_p_value <= 1.0


def test_matches_scipy_on_log10_loads():
    table = three_group_table()
    result = OrganStatisticalAnalyzer(confidence_level=0.9).analyze_organ(table, "lung")

    groups = [np.log10(table.loc[table["group"] == g, "CFUs_per_mL"].to_numpy()) for g in "abc"]
    expected = stats.tukey_hsd(*groups)
    ci = expected.confidence_interval(confidence_level=0.9)
    f_stat, f_p = stats.f_oneway(*groups)

    assert result.anova.statistic == pytest.approx(f_stat)
    assert result.anova.pvalue == pytest.approx(f_p)
    assert (result.anova.df_between, result.anova.df_within) == (2, 9)

    pairs = {(c.contrast_group_a, c.contrast_group_b): c for c in result.contrasts}
    assert list(pairs) == [("a", "b"), ("a", "c"), ("b", "c")]
    for (ga, gb), contrast in pairs.items():
        i, j = "abc".index(ga), "abc".index(gb)
        assert contrast.estimate == pytest.approx(expected.statistic[i, j])
        assert contrast.adjusted_p_value == pytest.approx(expected.pvalue[i, j])
        assert contrast.confidence_low == pytest.approx(ci.low[i, j])
        assert contrast.confidence_high == pytest.approx(ci.high[i, j])


def test_analysis_is_deterministic():
    table = three_group_table()
    analyzer = OrganStatisticalAnalyzer()
    first = analyzer.analyze(table).stat_results_table()
    second = analyzer.analyze(table).stat_results_table()
    pd.testing.assert_frame_equal(first, second)
    assert list(first.columns) == STAT_RESULT_COLUMNS


def test_small_groups_are_left_out(joined_two_groups):
    extra = joined_two_groups.iloc[[0]].assign(group="control", CFUs_per_mL=50.0)
    table = pd.concat([joined_two_groups, extra], ignore_index=True)
    result = OrganStatisticalAnalyzer().analyze_organ(table, "lung")
    assert result.groups == ["a", "b"]
    assert result.excluded_groups == {"control": 1}


def test_zero_loads_are_left_out(joined_two_groups):
    extra = joined_two_groups.iloc[[0, 1]].assign(group="control", CFUs=0.0, CFUs_per_mL=0.0)
    table = pd.concat([joined_two_groups, extra], ignore_index=True)
    result = OrganStatisticalAnalyzer().analyze_organ(table, "lung")
    assert result.groups == ["a", "b"]
    assert result.n_excluded_replicates == 2


def test_single_group_raises_insufficient_data(joined_two_groups):
    table = joined_two_groups.assign(group="a")
    with pytest.raises(InsufficientDataError) as excinfo:
        OrganStatisticalAnalyzer().analyze_organ(table, "lung")
    assert excinfo.value.organ == "lung"


def test_groups_with_one_observation_each_raise(joined_two_groups):
    table = joined_two_groups.iloc[[0, 2]]
    with pytest.raises(InsufficientDataError):
        OrganStatisticalAnalyzer().analyze_organ(table, "lung")


def test_non_numeric_load_raises(joined_two_groups):
    table = joined_two_groups.assign(CFUs_per_mL=joined_two_groups["CFUs_per_mL"].astype(str))
    with pytest.raises(NumericTypeError):
        OrganStatisticalAnalyzer().analyze_organ(table, "lung")


def test_one_organ_failing_does_not_stop_others(joined_two_groups):
    spleen = joined_two_groups.assign(organ="spleen", group="a")
    table = pd.concat([joined_two_groups, spleen], ignore_index=True)

    results = OrganStatisticalAnalyzer().analyze(table)

    assert results.organ_order == ["lung", "spleen"]
    assert list(results.organ_results) == ["lung"]
    assert list(results.organ_errors) == ["spleen"]
    assert results.stat_results_table()["organ"].tolist() == ["lung"]


def test_expected_organ_without_rows_is_reported(joined_two_groups):
    results = OrganStatisticalAnalyzer().analyze(joined_two_groups, organs=["kidney", "lung"])
    assert results.organ_order == ["kidney", "lung"]
    assert "kidney" in results.organ_errors
    assert "lung" in results.organ_results


def test_organ_order_follows_table(joined_two_groups):
    spleen = joined_two_groups.assign(organ="spleen")
    table = pd.concat([spleen, joined_two_groups], ignore_index=True)
    results = OrganStatisticalAnalyzer().analyze(table)
    assert results.stat_results_table()["organ"].tolist() == ["spleen", "lung"]
    assert results.anova_table()["organ"].tolist() == ["spleen", "lung"]


def test_descriptive_stats(joined_two_groups):
    result = OrganStatisticalAnalyzer().analyze_organ(joined_two_groups, "lung")
    desc = result.descriptive_stats
    assert desc.loc["a", "n"] == 2
    assert desc.loc["a", "mean_log10"] == pytest.approx(2.5)
    assert desc.loc["b", "geometric_mean_CFUs_per_mL"] == pytest.approx(10 ** 4.5)


def test_format_analysis_report_mentions_every_organ(joined_two_groups):
    spleen = joined_two_groups.assign(organ="spleen", group="a")
    results = OrganStatisticalAnalyzer().analyze(pd.concat([joined_two_groups, spleen]))
    text = format_analysis_report(results)
    assert "ORGAN: lung" in text
    assert "ORGAN: spleen" in text
    assert "Not analysed" in text
