"""
Differential expression backends.

- pydeseq2: PyDESeq2 (default, pure Python)
- deseq2_r: R DESeq2 through rpy2 (optional ``r`` extra)
"""

from typing import Any, Dict

from .base import DEBackend, RESULT_COLUMNS, standardize_results
from ..utils.exceptions import BackendError

BACKEND_NAMES = ("pydeseq2", "deseq2_r")


def get_backend(name: str, config: Dict[str, Any]) -> DEBackend:
    """Instantiate the backend called ``name`` with parameters from ``config``."""
    params = {
        "alpha": config.get("alpha", 0.05),
        "n_cpus": config.get("n_cpus", 1),
        "shrink_lfc": config.get("shrink_lfc", False),
    }

    if name == "pydeseq2":
        from .pydeseq2_backend import PyDESeq2Backend
        return PyDESeq2Backend(**params)
    if name == "deseq2_r":
        from .rpy2_backend import RDESeq2Backend
        return RDESeq2Backend(**params)

    raise BackendError(f"Unknown DE backend '{name}'. Choose from {BACKEND_NAMES}")


__all__ = [
    "DEBackend",
    "RESULT_COLUMNS",
    "standardize_results",
    "get_backend",
    "BACKEND_NAMES",
]
