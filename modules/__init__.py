"""CFU analysis modules."""
from .errors import CFUPipelineError, LoadError, SchemaError, NumericTypeError, InsufficientDataError
from .data_processing import (
    CFUDataProcessor, ProcessedData, LoadedWorkbook, MetadataRecord,
    calculate_cfu_per_ml, to_output_table, write_output, validate_data_quality,
)
from .statistical_tests import (
    OrganStatisticalAnalyzer, ComprehensiveAnalysisResults, OrganAnalysisResult,
    StatResult, format_analysis_report,
)
from .report_generation import ExcelReportGenerator, summarize_loads, format_stat_table
from .visualization import CFUVisualizer
from .pipeline import run_pipeline, PipelineResult
