"""CFU pipeline configuration module."""
from .cfu_schema import (
    METADATA_SHEET, CONTROL_GROUP, METADATA_COLUMNS, METADATA_NUMERIC_COLUMNS,
    REQUIRED_ORGAN_COLUMNS, OPTIONAL_ORGAN_COLUMNS, TIDY_COLUMNS,
    OUTPUT_COLUMNS, OUTPUT_RENAMES, STAT_RESULT_COLUMNS,
    DILUTION_COLUMN_PATTERN, parse_dilution_level, get_dilution_columns,
    get_repeated_dilution_columns, validate_columns,
)
from .pipeline_settings import (
    PIPELINE_PRESETS, DEFAULT_SETTINGS, PipelineSettings, get_settings,
    get_available_presets, get_preset_display_names, add_custom_preset,
)
