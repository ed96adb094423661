"""
Tissue RNA-seq Pipeline

Per-tissue bulk RNA-seq analysis of genotype x treatment designs with 6 agents:
1. Load count matrix and sample metadata
2. Build per-tissue grouped datasets
3. DEG Analysis (DESeq2)
4. Visualization
5. GO over-representation enrichment
6. Result export

Each agent has clear input/output specs and can be run independently.
"""

__version__ = "1.0.0"

from .config import DEFAULT_CONFIG, load_config
from .orchestrator import TissueRNAseqPipeline, create_sample_data

__all__ = [
    "DEFAULT_CONFIG",
    "load_config",
    "TissueRNAseqPipeline",
    "create_sample_data",
]
