"""
Error types raised by the CFU pipeline.

LoadError, SchemaError and NumericTypeError abort a run. InsufficientDataError
is scoped to one organ; the statistics engine records it and moves on.
"""


class CFUPipelineError(Exception):
    """Base class for all pipeline errors."""


class LoadError(CFUPipelineError):
    """The workbook or one of its sheets could not be read."""


class SchemaError(CFUPipelineError):
    """A sheet lacks the columns (or dilution-column pattern) the pipeline needs."""


class NumericTypeError(CFUPipelineError, TypeError):
    """A non-numeric value sits where a number is required."""


class InsufficientDataError(CFUPipelineError):
    """An organ lacks the group/observation structure needed for ANOVA + Tukey HSD."""

    def __init__(self, organ: str, reason: str):
        self.organ = organ
        self.reason = reason
        super().__init__(f"{organ}: {reason}")
