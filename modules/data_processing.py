"""
Data Processing Module for CFU Analysis
=======================================

Handles:
1. Loading organ sheets and the metadata sheet from Excel/ODS workbooks
2. Parsing mixed-representation columns into one canonical type each
3. Reshaping wide dilution columns into long replicate records
4. Unioning all organs into one table
5. Filtering replicates to the countable range
6. Joining plating metadata and calculating CFUs per mL
"""

import logging
import numbers
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
from pandas.api.types import is_bool_dtype, is_numeric_dtype

from config.cfu_schema import (
    METADATA_SHEET, METADATA_COLUMNS, METADATA_NUMERIC_COLUMNS, ORGAN_COL,
    GROUP_COL, MOUSE_COL, COUNT_DATE_COL, TEXT_COLUMNS, REQUIRED_ORGAN_COLUMNS,
    DILUTION_LEVEL_COL, CFU_COL, CFU_PER_ML_COL, TIDY_COLUMNS, OUTPUT_RENAMES,
    OUTPUT_COLUMNS, MISSING_MARKERS, TNTC_MARKERS,
    parse_dilution_level, get_dilution_columns, get_repeated_dilution_columns,
    validate_columns,
)
from config.pipeline_settings import PipelineSettings, DEFAULT_SETTINGS
from modules.errors import LoadError, SchemaError, NumericTypeError

logger = logging.getLogger(__name__)

_DILUTION_COLUMN_TMP = "_dilution_column"
_SOURCE_ROW_TMP = "_source_row"


@dataclass(frozen=True)
class MetadataRecord:
    """Plating metadata for one organ."""
    organ: str
    percent_organ_plated: float
    aliquot: float
    dilution_factor: float
    total_resuspension_mL: float
    volume_plated_uL: float


@dataclass
class LoadedWorkbook:
    """Raw sheets read from a source workbook."""
    filepath: Path
    organ_tables: Dict[str, pd.DataFrame]  # sheet order preserved
    metadata: List[MetadataRecord]

    @property
    def organs(self) -> List[str]:
        return list(self.organ_tables.keys())


@dataclass
class ProcessedData:
    """Container for every intermediate table of one pipeline run."""
    workbook: LoadedWorkbook
    long_tables: Dict[str, pd.DataFrame]  # one reshaped table per organ
    unioned: pd.DataFrame
    filtered: pd.DataFrame
    joined: pd.DataFrame  # TidyReplicate table
    settings: PipelineSettings = field(default_factory=lambda: DEFAULT_SETTINGS)


# =============================================================================
# CELL PARSING
# =============================================================================

def _is_missing(value) -> bool:
    """True for empty cells and textual 'not measured' markers."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in MISSING_MARKERS
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _is_tntc(value) -> bool:
    return isinstance(value, str) and value.strip().lower() in TNTC_MARKERS


def _parse_number(value, column: str, allow_tntc: bool = False) -> float:
    if isinstance(value, (bool, np.bool_)):
        raise NumericTypeError(f"Column '{column}' holds a boolean ({value!r}) where a number is required")
    if isinstance(value, numbers.Number):
        return float(value)
    if _is_missing(value):
        return np.nan
    if allow_tntc and _is_tntc(value):
        return np.nan
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    raise NumericTypeError(f"Column '{column}' holds non-numeric value {value!r}")


def parse_count_column(series: pd.Series, column: str) -> pd.Series:
    """
    Parse a dilution column into float colony counts.

    Numbers pass through, blank cells and missing markers become NaN, and
    too-numerous-to-count markers (TNTC, TMTC, >300) become NaN as well.

    Raises:
        NumericTypeError: any other text in the column
    """
    values = [_parse_number(v, column, allow_tntc=True) for v in series]
    return pd.Series(values, index=series.index, dtype=float, name=series.name)


def parse_numeric_column(series: pd.Series, column: str) -> pd.Series:
    """Parse a metadata column into floats; only blanks/missing markers become NaN."""
    values = [_parse_number(v, column) for v in series]
    return pd.Series(values, index=series.index, dtype=float, name=series.name)


def _canonical_text(value) -> Optional[str]:
    if _is_missing(value):
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value).strip()


def parse_text_column(series: pd.Series) -> pd.Series:
    """Identifiers as stripped text; 1.0 and '1' both become '1'."""
    values = [_canonical_text(v) for v in series]
    return pd.Series(values, index=series.index, dtype=object, name=series.name)


def parse_date_column(series: pd.Series) -> pd.Series:
    """
    Parse a count-date column.

    The column becomes datetime64 when every present cell is a date (or a
    string that parses as one); otherwise the whole column becomes text.
    """
    present_mask = ~series.map(_is_missing).astype(bool)
    present = series[present_mask]
    if present.empty:
        return pd.Series(pd.NaT, index=series.index, dtype="datetime64[ns]", name=series.name)

    is_datetime = present.map(lambda v: isinstance(v, (pd.Timestamp, np.datetime64)) or hasattr(v, 'isoformat'))
    is_text = present.map(lambda v: isinstance(v, str))
    if bool((is_datetime | is_text).all()):
        parsed = pd.to_datetime(present.astype(object), errors='coerce', format='mixed')
        if not parsed.isna().any():
            result = pd.Series(pd.NaT, index=series.index, dtype="datetime64[ns]", name=series.name)
            result[present_mask] = parsed.astype("datetime64[ns]")
            return result

    return parse_text_column(series)


def count_tntc_cells(table: pd.DataFrame) -> int:
    """Number of too-numerous-to-count cells across the dilution columns."""
    dil_cols = get_dilution_columns(table.columns)
    return int(sum(table[c].map(_is_tntc).sum() for c in dil_cols))


def calculate_cfu_per_ml(
    cfus,
    dilution_factor,
    dilution_level,
    total_resuspension_ml,
    volume_plated_ul
):
    """
    Back-calculate bacterial load from a raw colony count.

    CFUs/mL = CFUs x dilution_factor^dilution_level
              x (total_resuspension_mL / volume_plated_uL) x 1000

    Works on scalars or aligned pandas Series.

    Raises:
        NumericTypeError: any argument is not numeric
    """
    for name, value in [('CFUs', cfus), ('dilution_factor', dilution_factor),
                        ('dilution_level', dilution_level),
                        ('total_resuspension_mL', total_resuspension_ml),
                        ('volume_plated_uL', volume_plated_ul)]:
        if isinstance(value, pd.Series):
            if not is_numeric_dtype(value) or is_bool_dtype(value):
                raise NumericTypeError(f"{name} must be numeric, got dtype {value.dtype}")
        elif isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Number):
            raise NumericTypeError(f"{name} must be numeric, got {value!r}")

    return cfus * dilution_factor ** dilution_level * (total_resuspension_ml / volume_plated_ul) * 1000


def metadata_frame(metadata: Iterable[MetadataRecord]) -> pd.DataFrame:
    """Metadata records as a DataFrame with the metadata sheet's columns."""
    rows = [
        {
            ORGAN_COL: m.organ,
            'percent_organ_plated': m.percent_organ_plated,
            'aliquot': m.aliquot,
            'dilution_factor': m.dilution_factor,
            'total_resuspension_mL': m.total_resuspension_mL,
            'volume_plated_uL': m.volume_plated_uL,
        }
        for m in metadata
    ]
    df = pd.DataFrame(rows, columns=METADATA_COLUMNS)
    df[METADATA_NUMERIC_COLUMNS] = df[METADATA_NUMERIC_COLUMNS].astype(float)
    return df


def _empty_long_table(columns: Optional[List[str]] = None) -> pd.DataFrame:
    columns = columns or [ORGAN_COL, COUNT_DATE_COL, 'who_plated', 'who_counted',
                          GROUP_COL, MOUSE_COL, DILUTION_LEVEL_COL, CFU_COL]
    dtypes = {DILUTION_LEVEL_COL: 'int64', CFU_COL: float}
    return pd.DataFrame({c: pd.Series(dtype=dtypes.get(c, object)) for c in columns})


class CFUDataProcessor:
    """
    Turn a multi-sheet CFU workbook into a tidy table of replicate loads.

    Usage:
        processor = CFUDataProcessor()
        processed = processor.load_and_process("counts.xlsx")
        processed.joined  # organ, ..., CFUs, CFUs_per_mL
    """

    def __init__(self, settings: Optional[PipelineSettings] = None):
        """
        Initialize the processor.

        Args:
            settings: Countable window and control group. Defaults to the
                'standard' preset (5-95 colonies, control group 'control').
        """
        self.settings = settings or DEFAULT_SETTINGS

    # -------------------------------------------------------------------------
    # Sheet loader
    # -------------------------------------------------------------------------

    @staticmethod
    def _engine_for(filepath: Path) -> Optional[str]:
        suffix = filepath.suffix.lower()
        if suffix == '.ods':
            return 'odf'
        elif suffix in ['.xlsx', '.xlsm']:
            return 'openpyxl'
        elif suffix == '.xls':
            return 'xlrd'
        return None

    def get_available_sheets(self, filepath: Union[str, Path]) -> List[str]:
        """Get list of sheet names in a workbook."""
        filepath = Path(filepath)
        try:
            with pd.ExcelFile(filepath, engine=self._engine_for(filepath)) as xlsx:
                return list(xlsx.sheet_names)
        except Exception as e:
            raise LoadError(f"Could not open workbook {filepath}: {e}") from e

    def _read_sheet(self, xlsx: pd.ExcelFile, sheet_name: str) -> pd.DataFrame:
        try:
            df = xlsx.parse(sheet_name)
        except Exception as e:
            raise LoadError(f"Could not read sheet '{sheet_name}': {e}") from e

        df.columns = [str(c).strip() for c in df.columns]
        # Unnamed, empty columns and blank rows are spreadsheet padding
        padding = [c for c in df.columns if c.startswith('Unnamed:') and df[c].isna().all()]
        df = df.drop(columns=padding)
        df = df.dropna(how='all').reset_index(drop=True)
        return df

    def load_workbook(
        self,
        filepath: Union[str, Path],
        sheet_names: Optional[List[str]] = None
    ) -> LoadedWorkbook:
        """
        Read the organ sheets and the metadata sheet.

        Args:
            filepath: Path to the workbook
            sheet_names: Sheets to read, in order. None reads every sheet.
                The 'metadata' sheet is always read and never treated as an organ.

        Returns:
            LoadedWorkbook with one raw table per organ sheet

        Raises:
            LoadError: file unreadable, a listed sheet or the metadata sheet absent
            SchemaError: metadata sheet lacks required columns or repeats an organ
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise LoadError(f"Workbook not found: {filepath}")

        try:
            xlsx_file = pd.ExcelFile(filepath, engine=self._engine_for(filepath))
        except Exception as e:
            raise LoadError(f"Could not open workbook {filepath}: {e}") from e

        with xlsx_file as xlsx:
            available = list(xlsx.sheet_names)
            requested = available if sheet_names is None else list(sheet_names)

            missing = [s for s in requested if s not in available]
            if missing:
                raise LoadError(f"Sheet(s) not found in {filepath.name}: {', '.join(map(str, missing))}")
            if METADATA_SHEET not in available:
                raise LoadError(f"Workbook {filepath.name} has no '{METADATA_SHEET}' sheet")

            metadata_raw = self._read_sheet(xlsx, METADATA_SHEET)
            organ_tables = {}
            for sheet in requested:
                if sheet == METADATA_SHEET or sheet in organ_tables:
                    continue
                organ_tables[sheet] = self._read_sheet(xlsx, sheet)

        metadata = self.parse_metadata(metadata_raw)
        logger.info(
            f"Loaded {len(organ_tables)} organ sheet(s) from {filepath.name}: "
            f"{', '.join(organ_tables)}; metadata for {len(metadata)} organ(s)"
        )
        return LoadedWorkbook(filepath=filepath, organ_tables=organ_tables, metadata=metadata)

    def parse_metadata(self, df: pd.DataFrame) -> List[MetadataRecord]:
        """Validate and parse the metadata sheet into one record per organ."""
        missing = validate_columns(df.columns, METADATA_COLUMNS)
        if missing:
            raise SchemaError(f"Metadata sheet is missing column(s): {', '.join(missing)}")

        organs = parse_text_column(df[ORGAN_COL])
        numeric = {col: parse_numeric_column(df[col], col) for col in METADATA_NUMERIC_COLUMNS}

        valid = organs.notna()
        if not valid.all():
            logger.warning(f"Ignoring {int((~valid).sum())} metadata row(s) without an organ")

        duplicated = organs[valid][organs[valid].duplicated()].unique().tolist()
        if duplicated:
            raise SchemaError(f"Metadata lists organ(s) more than once: {', '.join(duplicated)}")

        for col, values in numeric.items():
            blank = values[valid].isna()
            if blank.any():
                raise NumericTypeError(
                    f"Metadata column '{col}' is blank for organ(s): "
                    f"{', '.join(organs[valid][blank])}"
                )

        records = []
        for idx in organs[valid].index:
            records.append(MetadataRecord(
                organ=organs[idx],
                **{col: float(numeric[col][idx]) for col in METADATA_NUMERIC_COLUMNS}
            ))
        return records

    # -------------------------------------------------------------------------
    # Reshaper
    # -------------------------------------------------------------------------

    def parse_organ_table(self, table: pd.DataFrame, dilution_cols: List[str]) -> pd.DataFrame:
        """
        Apply one parser per column so every column has a single representation.

        Dilution columns become float counts, identifier columns text and
        count_date a date (or text). Other columns are left as read.
        """
        parsed = table.copy()
        for col in dilution_cols:
            parsed[col] = parse_count_column(table[col], col)
        for col in TEXT_COLUMNS:
            if col in parsed.columns:
                parsed[col] = parse_text_column(table[col])
        if COUNT_DATE_COL in parsed.columns:
            parsed[COUNT_DATE_COL] = parse_date_column(table[COUNT_DATE_COL])
        return parsed

    def reshape_organ(self, table: pd.DataFrame, organ: str) -> pd.DataFrame:
        """
        Convert one organ's wide dilution columns into long replicate records.

        Each present dilution cell yields one record carrying the row's
        non-dilution columns, the organ, the dilution level and the count.
        Records come out row by row, dilutions in sheet order.

        An ``organ`` column already in the sheet is replaced by the sheet name.

        Raises:
            SchemaError: no dilution column, group/mouse column absent, a
                repeated dilution header, or a column named CFUs/dilution_level
            NumericTypeError: non-numeric text in a dilution column
        """
        missing = validate_columns(table.columns, REQUIRED_ORGAN_COLUMNS)
        if missing:
            raise SchemaError(f"Sheet '{organ}' is missing column(s): {', '.join(missing)}")

        repeated = get_repeated_dilution_columns(table.columns)
        if repeated:
            raise SchemaError(
                f"Sheet '{organ}' repeats dilution header(s) (read back as {', '.join(repeated)}); "
                f"each dilution needs its own column name"
            )

        clashing = [c for c in (DILUTION_LEVEL_COL, CFU_COL) if c in table.columns]
        if clashing:
            raise SchemaError(
                f"Sheet '{organ}' has column(s) {', '.join(clashing)} which the reshaped table reserves"
            )

        if ORGAN_COL in table.columns:
            # every record is tagged with the sheet it came from
            logger.debug(f"Sheet '{organ}': replacing its '{ORGAN_COL}' column with the sheet name")
            table = table.drop(columns=[ORGAN_COL])

        dilution_cols = get_dilution_columns(table.columns)
        if not dilution_cols:
            raise SchemaError(
                f"Sheet '{organ}' has no dilution columns (expected names like 'dil_1'); "
                f"found: {', '.join(map(str, table.columns))}"
            )

        parsed = self.parse_organ_table(table, dilution_cols)
        id_cols = [c for c in parsed.columns if c not in dilution_cols]

        parsed[_SOURCE_ROW_TMP] = np.arange(len(parsed))
        long_df = parsed.melt(
            id_vars=id_cols + [_SOURCE_ROW_TMP],
            value_vars=dilution_cols,
            var_name=_DILUTION_COLUMN_TMP,
            value_name=CFU_COL,
        )
        # melt is column-major; a stable sort on the source row makes it row-major
        long_df = long_df.sort_values(_SOURCE_ROW_TMP, kind='mergesort')
        long_df = long_df[long_df[CFU_COL].notna()].copy()

        long_df[DILUTION_LEVEL_COL] = long_df[_DILUTION_COLUMN_TMP].map(parse_dilution_level).astype('int64')
        long_df.insert(0, ORGAN_COL, organ)
        long_df = long_df[[ORGAN_COL] + id_cols + [DILUTION_LEVEL_COL, CFU_COL]].reset_index(drop=True)

        logger.debug(
            f"{organ}: {len(table)} row(s) x {len(dilution_cols)} dilution(s) -> {len(long_df)} replicate(s)"
        )
        return long_df

    def reshape_all(self, workbook: LoadedWorkbook) -> Dict[str, pd.DataFrame]:
        """Reshape every organ sheet, preserving sheet order."""
        return {organ: self.reshape_organ(table, organ) for organ, table in workbook.organ_tables.items()}

    # -------------------------------------------------------------------------
    # Unioner
    # -------------------------------------------------------------------------

    def union_organs(
        self,
        tables: Union[Dict[str, pd.DataFrame], List[pd.DataFrame]]
    ) -> pd.DataFrame:
        """
        Stack the reshaped organ tables.

        Columns are the union of all inputs' columns (first-seen order);
        rows from a table lacking a column get nulls there. Input order is kept.
        """
        frames = list(tables.values()) if isinstance(tables, dict) else list(tables)

        columns: List[str] = []
        for frame in frames:
            columns.extend(c for c in frame.columns if c not in columns)

        non_empty = [f for f in frames if not f.empty]
        if not non_empty:
            return _empty_long_table(columns or None)

        unioned = pd.concat(non_empty, ignore_index=True, sort=False)
        return unioned.reindex(columns=columns)

    # -------------------------------------------------------------------------
    # Countability filter
    # -------------------------------------------------------------------------

    def filter_countable(self, long_df: pd.DataFrame) -> pd.DataFrame:
        """
        Keep replicates in the countable range, plus every control replicate.

        A record survives iff countable_min <= CFUs <= countable_max
        (inclusive) or its group equals the control group. No deduplication:
        several countable dilutions of one mouse all survive.

        Raises:
            NumericTypeError: CFUs column is not numeric
        """
        if CFU_COL not in long_df.columns:
            raise SchemaError(f"Long table has no '{CFU_COL}' column")

        cfus = long_df[CFU_COL]
        if not is_numeric_dtype(cfus) or is_bool_dtype(cfus):
            raise NumericTypeError(f"'{CFU_COL}' must be numeric before filtering, got dtype {cfus.dtype}")

        countable = cfus.between(self.settings.countable_min, self.settings.countable_max, inclusive='both')
        if GROUP_COL in long_df.columns:
            is_control = long_df[GROUP_COL].eq(self.settings.control_group)
        else:
            is_control = pd.Series(False, index=long_df.index)

        filtered = long_df[countable | is_control].reset_index(drop=True)
        logger.info(
            f"Countable filter ({self.settings.countable_min:g}-{self.settings.countable_max:g} CFUs, "
            f"'{self.settings.control_group}' always kept): kept {len(filtered)} of {len(long_df)} replicate(s)"
        )
        return filtered

    # -------------------------------------------------------------------------
    # Metadata joiner and load calculator
    # -------------------------------------------------------------------------

    def join_metadata(
        self,
        filtered_df: pd.DataFrame,
        metadata: Union[List[MetadataRecord], pd.DataFrame]
    ) -> pd.DataFrame:
        """
        Join plating metadata by organ and compute CFUs per mL.

        This is an inner join: replicates whose organ has no metadata row are
        dropped without an error or a warning.

        Returns:
            TidyReplicate table with exactly the TIDY_COLUMNS
        """
        meta_df = metadata.copy() if isinstance(metadata, pd.DataFrame) else metadata_frame(metadata)

        joined = filtered_df.merge(
            meta_df[METADATA_COLUMNS], on=ORGAN_COL, how='inner', validate='many_to_one'
        )
        joined[CFU_PER_ML_COL] = calculate_cfu_per_ml(
            joined[CFU_COL],
            joined['dilution_factor'],
            joined[DILUTION_LEVEL_COL],
            joined['total_resuspension_mL'],
            joined['volume_plated_uL'],
        )

        for col in TIDY_COLUMNS:
            if col not in joined.columns:
                joined[col] = None
        return joined[TIDY_COLUMNS].reset_index(drop=True)

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def load_and_process(
        self,
        filepath: Union[str, Path],
        sheet_names: Optional[List[str]] = None
    ) -> ProcessedData:
        """
        Main entry point: load a workbook and run every stage up to the join.

        Args:
            filepath: Path to Excel/ODS file
            sheet_names: Sheets to process in order. None processes every sheet.

        Returns:
            ProcessedData with each stage's table
        """
        workbook = self.load_workbook(filepath, sheet_names)
        long_tables = self.reshape_all(workbook)
        unioned = self.union_organs(long_tables)
        filtered = self.filter_countable(unioned)
        joined = self.join_metadata(filtered, workbook.metadata)

        return ProcessedData(
            workbook=workbook,
            long_tables=long_tables,
            unioned=unioned,
            filtered=filtered,
            joined=joined,
            settings=self.settings,
        )


# =============================================================================
# OUTPUT WRITER
# =============================================================================

def to_output_table(joined_df: pd.DataFrame) -> pd.DataFrame:
    """The tidy table with output column names (dilution, CFUs_per_ml)."""
    out = joined_df.rename(columns=OUTPUT_RENAMES)
    for col in OUTPUT_COLUMNS:
        if col not in out.columns:
            out[col] = None
    return out[OUTPUT_COLUMNS].copy()


def write_output(joined_df: pd.DataFrame, filepath: Union[str, Path]) -> Path:
    """Write the tidy replicate table; .xlsx/.xlsm write Excel, anything else CSV."""
    filepath = Path(filepath)
    out = to_output_table(joined_df)
    if filepath.suffix.lower() in ['.xlsx', '.xlsm']:
        out.to_excel(filepath, index=False, engine='openpyxl')
    else:
        out.to_csv(filepath, index=False)
    logger.info(f"Wrote {len(out)} replicate(s) to {filepath}")
    return filepath


def validate_data_quality(processed: ProcessedData) -> Dict[str, Any]:
    """
    Generate a data quality report.

    Also the only place where replicates dropped by the metadata join show up.
    """
    known_organs = {m.organ for m in processed.workbook.metadata}
    filtered = processed.filtered

    unmatched_mask = ~filtered[ORGAN_COL].isin(known_organs)
    joined = processed.joined

    report = {
        'n_organs': len(processed.workbook.organ_tables),
        'organs': processed.workbook.organs,
        'organs_without_metadata': [o for o in processed.workbook.organs if o not in known_organs],
        'n_raw_rows': {o: len(t) for o, t in processed.workbook.organ_tables.items()},
        'n_long_rows': {o: len(t) for o, t in processed.long_tables.items()},
        'n_tntc_cells': {o: count_tntc_cells(t) for o, t in processed.workbook.organ_tables.items()},
        'n_unioned': len(processed.unioned),
        'n_filtered': len(filtered),
        'n_removed_by_filter': len(processed.unioned) - len(filtered),
        'n_unmatched_replicates': int(unmatched_mask.sum()),
        'n_joined': len(joined),
        'groups': {},
        'n_mice_with_multiple_dilutions': 0,
    }

    if not joined.empty:
        for organ, organ_df in joined.groupby(ORGAN_COL, sort=False):
            report['groups'][organ] = organ_df[GROUP_COL].dropna().unique().tolist()
        per_mouse = joined.groupby([ORGAN_COL, GROUP_COL, MOUSE_COL], dropna=False).size()
        report['n_mice_with_multiple_dilutions'] = int((per_mouse > 1).sum())

    return report
