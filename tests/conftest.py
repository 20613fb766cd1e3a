import datetime as dt

import numpy as np
import pandas as pd
import pytest


METADATA = pd.DataFrame({
    "organ": ["lung", "spleen"],
    "percent_organ_plated": [100, 100],
    "aliquot": [1, 1],
    "dilution_factor": [10, 10],
    "total_resuspension_mL": [1.0, 0.5],
    "volume_plated_uL": [10, 10],
})


def lung_sheet():
    return pd.DataFrame({
        "group": ["group_1", "group_1", "group_1", "group_2", "group_2", "group_2", "control"],
        "mouse": [1, 2, 3, 4, 5, 6, 7],
        "count_date": [dt.datetime(2024, 3, 1)] * 7,
        "who_plated": ["AB"] * 7,
        "who_counted": ["CD"] * 7,
        "dil_1": [50, 80, 120, 20, 30, "TNTC", 2],
        "dil_2": [6, np.nan, 12, 3, np.nan, 40, np.nan],
    })


def spleen_sheet():
    # No who_counted column: the union must fill it with nulls
    return pd.DataFrame({
        "group": ["group_1", "group_1", "group_2", "group_2"],
        "mouse": ["1", "2", "3", "4"],
        "count_date": [dt.datetime(2024, 3, 2)] * 4,
        "who_plated": ["AB"] * 4,
        "dil_0": [10, 15, 60, 90],
        "dil_1": [1, np.nan, 7, 9],
    })


def write_workbook(path, sheets):
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=name, index=False)
    return path


@pytest.fixture
def make_workbook(tmp_path):
    def _make(sheets, name="counts.xlsx"):
        return write_workbook(tmp_path / name, sheets)
    return _make


@pytest.fixture
def standard_sheets():
    return {"metadata": METADATA.copy(), "lung": lung_sheet(), "spleen": spleen_sheet()}


@pytest.fixture
def workbook_path(make_workbook, standard_sheets):
    return make_workbook(standard_sheets)


@pytest.fixture
def joined_two_groups():
    """Joined table for one organ with log10 loads 2,3 (a) and 4,5 (b)."""
    return pd.DataFrame({
        "organ": ["lung"] * 4,
        "count_date": [pd.Timestamp("2024-03-01")] * 4,
        "who_plated": ["AB"] * 4,
        "who_counted": ["CD"] * 4,
        "group": ["a", "a", "b", "b"],
        "mouse": ["1", "2", "3", "4"],
        "dilution_level": [1, 1, 2, 2],
        "CFUs": [10.0, 100.0, 100.0, 1000.0],
        "CFUs_per_mL": [1e2, 1e3, 1e4, 1e5],
    })
