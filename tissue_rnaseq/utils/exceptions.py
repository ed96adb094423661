"""Exceptions raised by the tissue RNA-seq pipeline."""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class InputDataError(PipelineError, ValueError):
    """Count matrix or sample metadata is malformed or inconsistent."""


class BackendError(PipelineError, RuntimeError):
    """Differential expression backend is unavailable or failed to fit."""
