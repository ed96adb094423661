"""
Tissue RNA-seq Pipeline Agents

Each agent handles a specific step of the analysis:
- Agent 1: Load count matrix and sample metadata
- Agent 2: Per-tissue genotype x treatment datasets
- Agent 3: DEG Analysis (DESeq2)
- Agent 4: Visualization
- Agent 5: Over-representation enrichment (GO)
- Agent 6: Result export
"""

from .agent1_load import LoadAgent
from .agent2_dataset import DatasetAgent
from .agent3_deg import DEGAgent
from .agent4_visualization import VisualizationAgent
from .agent5_enrichment import EnrichmentAgent
from .agent6_export import ExportAgent

__all__ = [
    "LoadAgent",
    "DatasetAgent",
    "DEGAgent",
    "VisualizationAgent",
    "EnrichmentAgent",
    "ExportAgent",
]
