"""Utility modules for the tissue RNA-seq pipeline."""

from .base_agent import BaseAgent, AgentResult
from .exceptions import PipelineError, InputDataError, BackendError
from .design import (
    build_group_factor,
    filter_low_counts,
    make_contrasts,
    design_formula,
    contrast_label,
    slugify,
)
from .gene_ids import GeneIdMapper, strip_version

__all__ = [
    "BaseAgent",
    "AgentResult",
    "PipelineError",
    "InputDataError",
    "BackendError",
    "build_group_factor",
    "filter_low_counts",
    "make_contrasts",
    "design_formula",
    "contrast_label",
    "slugify",
    "GeneIdMapper",
    "strip_version",
]
