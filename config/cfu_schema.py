"""
CFU Workbook Schema
===================

Column names and reserved values shared by every stage of the pipeline.

A source workbook holds one sheet named ``metadata`` plus one sheet per organ.
Organ sheets carry the identifier columns below and one or more dilution
columns (``dil_0``, ``dil_1``, ``dil_2`` ...) holding raw colony counts.
"""

import re
from typing import Dict, List


# Reserved names
METADATA_SHEET = "metadata"
CONTROL_GROUP = "control"

# Metadata sheet
ORGAN_COL = "organ"
METADATA_NUMERIC_COLUMNS: List[str] = [
    "percent_organ_plated",
    "aliquot",
    "dilution_factor",
    "total_resuspension_mL",
    "volume_plated_uL",
]
METADATA_COLUMNS: List[str] = [ORGAN_COL] + METADATA_NUMERIC_COLUMNS

# Organ sheets
GROUP_COL = "group"
MOUSE_COL = "mouse"
COUNT_DATE_COL = "count_date"
TEXT_COLUMNS: List[str] = [GROUP_COL, MOUSE_COL, "who_plated", "who_counted"]
REQUIRED_ORGAN_COLUMNS: List[str] = [GROUP_COL, MOUSE_COL]
OPTIONAL_ORGAN_COLUMNS: List[str] = [COUNT_DATE_COL, "who_plated", "who_counted"]

# "dil_2", "dil-2", "Dil 2" all denote dilution level 2
DILUTION_COLUMN_PATTERN = re.compile(r"^dil[\s_-]*(\d+)$", re.IGNORECASE)
REPEATED_DILUTION_PATTERN = re.compile(r"^dil[\s_-]*\d+\.\d+$", re.IGNORECASE)

# Long / tidy table
DILUTION_LEVEL_COL = "dilution_level"
CFU_COL = "CFUs"
CFU_PER_ML_COL = "CFUs_per_mL"
LOG10_CFU_PER_ML_COL = "log10_CFUs_per_mL"

TIDY_COLUMNS: List[str] = [
    ORGAN_COL,
    COUNT_DATE_COL,
    "who_plated",
    "who_counted",
    GROUP_COL,
    MOUSE_COL,
    DILUTION_LEVEL_COL,
    CFU_COL,
    CFU_PER_ML_COL,
]

# Output file
OUTPUT_RENAMES: Dict[str, str] = {
    DILUTION_LEVEL_COL: "dilution",
    CFU_PER_ML_COL: "CFUs_per_ml",
}
OUTPUT_COLUMNS: List[str] = [OUTPUT_RENAMES.get(c, c) for c in TIDY_COLUMNS]

# Statistics table
STAT_RESULT_COLUMNS: List[str] = [
    ORGAN_COL,
    "contrast_group_a",
    "contrast_group_b",
    "estimate",
    "confidence_low",
    "confidence_high",
    "adjusted_p_value",
]

# Cell contents that mean "not measured"
MISSING_MARKERS = ["", "na", "n/a", "nan", "none", "-", "--", "---", "nd", "n.d."]

# Plates too crowded to count
TNTC_MARKERS = ["tntc", "tmtc", "too many", "too numerous", "confluent", ">300", "> 300"]


def parse_dilution_level(column: str):
    """Return the dilution level encoded in a column name, or None."""
    match = DILUTION_COLUMN_PATTERN.match(str(column).strip())
    if match is None:
        return None
    return int(match.group(1))


def get_dilution_columns(columns) -> List[str]:
    """Columns whose names look like dilution columns, in their original order."""
    return [c for c in columns if parse_dilution_level(c) is not None]


def get_repeated_dilution_columns(columns) -> List[str]:
    """Dilution headers that pandas de-duplicated on read (dil_1 -> dil_1.1)."""
    return [c for c in columns if REPEATED_DILUTION_PATTERN.match(str(c).strip())]


def validate_columns(columns, required: List[str]) -> List[str]:
    """Return the required column names missing from ``columns``."""
    present = {str(c).strip() for c in columns}
    return [c for c in required if c not in present]
