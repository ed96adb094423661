"""
Tissue RNA-seq Pipeline Orchestrator

Coordinates the per-tissue genotype x treatment analysis.

Usage:
    from tissue_rnaseq import TissueRNAseqPipeline

    pipeline = TissueRNAseqPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"organism": "mouse", "tissues": ["liver"]}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent3_deg")
    pipeline.run_from("agent5_enrichment")  # Resume from agent 5

Pipeline:
    Load -> Dataset -> DEG -> Visualization -> Enrichment -> Export
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .agents import (
    LoadAgent,
    DatasetAgent,
    DEGAgent,
    VisualizationAgent,
    EnrichmentAgent,
    ExportAgent,
)
from .config import load_config
from .utils.base_agent import LOG_FORMAT, AgentResult


class TissueRNAseqPipeline:
    """Orchestrator for the per-tissue RNA-seq analysis pipeline."""

    AGENT_ORDER = [
        "agent1_load",
        "agent2_dataset",
        "agent3_deg",
        "agent4_visualization",
        "agent5_enrichment",
        "agent6_export",
    ]

    AGENT_CLASSES = {
        "agent1_load": LoadAgent,
        "agent2_dataset": DatasetAgent,
        "agent3_deg": DEGAgent,
        "agent4_visualization": VisualizationAgent,
        "agent5_enrichment": EnrichmentAgent,
        "agent6_export": ExportAgent,
    }

    # Files each agent needs from previous agents
    AGENT_DEPENDENCIES = {
        "agent1_load": [],
        "agent2_dataset": ["counts.csv", "samples.csv"],
        "agent3_deg": ["datasets.csv", "planned_contrasts.csv"],
        "agent4_visualization": ["datasets.csv", "contrasts.csv", "library_sizes.csv"],
        "agent5_enrichment": ["contrasts.csv"],
        "agent6_export": ["contrasts.csv"],
    }

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        run_dir: Optional[Path] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = load_config(overrides=config)

        # Create output directory with timestamp (or reuse one to resume)
        if run_dir is not None:
            self.run_dir = Path(run_dir)
            run_id = self.run_dir.name.replace("run_", "", 1)
        else:
            run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.run_dir = self.output_dir / f"run_{run_id}"
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.accumulated_dir = self.run_dir / "accumulated"

        self.logger = self._setup_logging()

        self.agent_results: List[AgentResult] = []

        # Track execution state
        self.execution_state = {
            "run_id": run_id,
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "errors": {},
            "agent_results": {}
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("tissue_rnaseq")
        logger.setLevel(logging.DEBUG)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # File handler
        log_file = self.run_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.DEBUG if self.config.get("verbose") else logging.INFO)

        formatter = logging.Formatter(LOG_FORMAT)
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        if agent_name == "agent1_load":
            return self.input_dir

        # Subsequent agents read accumulated outputs
        return self.accumulated_dir

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Copy agent outputs to accumulated directory for next agents."""
        self.accumulated_dir.mkdir(exist_ok=True)

        agent_output_dir = self.run_dir / agent_name
        if not agent_output_dir.exists():
            return

        # Re-run agents replace their earlier outputs
        for pattern in ["*.csv", "*.json"]:
            for f in agent_output_dir.glob(pattern):
                shutil.copy2(f, self.accumulated_dir / f.name)

        # Agents 4 and 5 both write figures; merge them
        figures_dir = agent_output_dir / "figures"
        if figures_dir.exists():
            shutil.copytree(figures_dir, self.accumulated_dir / "figures", dirs_exist_ok=True)

    def _copy_initial_inputs(self) -> None:
        """Copy initial input files to accumulated directory."""
        self.accumulated_dir.mkdir(exist_ok=True)

        for pattern in ["*.csv", "*.tsv", "*.json", "*.gmt"]:
            for f in self.input_dir.glob(pattern):
                shutil.copy2(f, self.accumulated_dir / f.name)

    def _check_dependencies(self, agent_name: str) -> List[str]:
        input_dir = self._get_agent_input_dir(agent_name)
        return [f for f in self.AGENT_DEPENDENCIES[agent_name] if not (input_dir / f).exists()]

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        missing = self._check_dependencies(agent_name)
        if missing:
            self.execution_state["failed_agents"].append(agent_name)
            self.execution_state["errors"][agent_name] = f"missing inputs: {missing}"
            raise FileNotFoundError(
                f"{agent_name} needs {missing} in {self._get_agent_input_dir(agent_name)}; "
                f"run the earlier agents first"
            )

        # Merge configs
        agent_config = {**self.config, **(config_override or {})}

        input_dir = self._get_agent_input_dir(agent_name)
        output_dir = self.run_dir / agent_name

        # Instantiate and run
        AgentClass = self.AGENT_CLASSES[agent_name]
        agent = AgentClass(
            input_dir=input_dir,
            output_dir=output_dir,
            config=agent_config
        )

        try:
            results = agent.execute()
        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.execution_state["errors"][agent_name] = str(e)
            self.agent_results.append(AgentResult(agent_name, False, output_dir, {}, agent.errors))
            raise
        finally:
            agent.close_logging()

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = results
        self.agent_results.append(AgentResult(agent_name, True, output_dir, results))

        # Accumulate outputs for next agents
        self._accumulate_outputs(agent_name)
        self.logger.info(f"{self.agent_results[-1]}")

        return results

    def _run_sequence(self, agents_to_run: List[str]) -> None:
        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                break

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting Tissue RNA-seq Pipeline")
        self.logger.info(f"Backend: {self.config['de_backend']}, organism: {self.config['organism']}")
        self.logger.info(f"Run directory: {self.run_dir}")

        # Copy initial inputs
        self._copy_initial_inputs()

        # Determine which agents to run
        if stop_after:
            if stop_after not in self.AGENT_ORDER:
                raise ValueError(f"Unknown agent: {stop_after}")
            stop_idx = self.AGENT_ORDER.index(stop_after) + 1
            agents_to_run = self.AGENT_ORDER[:stop_idx]
        else:
            agents_to_run = self.AGENT_ORDER

        self.logger.info(f"Agents to run: {agents_to_run}")

        self._run_sequence(agents_to_run)

        # Finalize
        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.execution_state["start_time"] = datetime.now().isoformat()
        start_idx = self.AGENT_ORDER.index(agent_name)

        self.logger.info(f"Resuming from {agent_name}")
        self._run_sequence(self.AGENT_ORDER[start_idx:])

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()
        return self.execution_state

    @property
    def succeeded(self) -> bool:
        return not self.execution_state["failed_agents"]

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


# Mouse genes used for the responsive part of the synthetic data set
SAMPLE_GENES = [
    'Cyp2b10', 'Cyp3a11', 'Cyp2c55', 'Gsta1', 'Gstm3', 'Ugt2b36', 'Abcc3', 'Nqo1',
    'Hmox1', 'Gclc', 'Gclm', 'Txnrd1', 'Srxn1', 'Mt1', 'Mt2', 'Saa1', 'Saa2',
    'Lcn2', 'Orm2', 'Fgb', 'Cxcl1', 'Il1b', 'Tnf', 'Socs3', 'Stat3', 'Myc',
    'Fos', 'Jun', 'Egr1', 'Atf3', 'Hspa1a', 'Hspa1b', 'Dnajb1', 'Hsph1',
    'Ppara', 'Cpt1a', 'Acox1', 'Ehhadh', 'Cd36', 'Fabp1', 'Pdk4', 'Angptl4',
    'Fgf21', 'Ucp3', 'Mstn', 'Myod1', 'Myog', 'Trim63', 'Fbxo32', 'Ctgf',
]


def create_sample_data(
    output_dir: Path,
    n_genes: int = 1000,
    n_replicates: int = 3,
    tissues: Optional[List[str]] = None,
    seed: int = 42
) -> None:
    """Create a synthetic two-tissue, genotype x treatment data set.

    Writes ``count_matrix.csv`` (genes x samples), ``metadata.csv``
    (sample_id, genotype, treatment, tissue, cohort) and ``config.json``.
    """
    import numpy as np
    import pandas as pd

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    tissues = tissues or ['liver', 'muscle']

    rng = np.random.default_rng(seed)

    n_named = min(len(SAMPLE_GENES), n_genes)
    genes = SAMPLE_GENES[:n_named] + [f'Gene{i}' for i in range(n_genes - n_named)]

    rows = []
    for tissue in tissues:
        for genotype in ['WT', 'KO']:
            for treatment in ['ctrl', 'treated']:
                for rep in range(n_replicates):
                    rows.append({
                        'sample_id': f'{tissue}_{genotype}_{treatment}_{rep + 1}',
                        'genotype': genotype,
                        'treatment': treatment,
                        'tissue': tissue,
                        'cohort': f'c{rep % 2 + 1}',
                    })
    meta_df = pd.DataFrame(rows)

    # Per-tissue baseline means, shared by every group of that tissue
    baselines = {t: rng.gamma(shape=2.0, scale=150.0, size=n_genes) + 5 for t in tissues}

    counts = np.zeros((n_genes, len(meta_df)), dtype=np.int64)
    for j, sample in meta_df.iterrows():
        mu = baselines[sample['tissue']].copy()
        if sample['genotype'] == 'KO':
            mu[:15] *= 4.0
            mu[15:25] *= 0.25
        if sample['treatment'] == 'treated':
            mu[25:40] *= 5.0
            mu[40:n_named] *= 0.2
        if sample['genotype'] == 'KO' and sample['treatment'] == 'treated':
            mu[:10] *= 2.0
        mu *= rng.uniform(0.8, 1.25)  # library size

        dispersion = 0.05
        n = 1.0 / dispersion
        counts[:, j] = rng.negative_binomial(n, n / (n + mu))

    count_df = pd.DataFrame(counts, columns=meta_df['sample_id'])
    count_df.insert(0, 'gene_id', genes)

    # Save files
    count_df.to_csv(output_dir / 'count_matrix.csv', index=False)
    meta_df.to_csv(output_dir / 'metadata.csv', index=False)

    config = {
        "organism": "mouse",
        "reference_genotype": "WT",
        "reference_treatment": "ctrl",
        "alpha": 0.05,
        "log2fc_cutoff": 1.0
    }
    with open(output_dir / 'config.json', 'w') as f:
        json.dump(config, f, indent=2)

    print(f"Sample data created in {output_dir}")
    print(f"  - count_matrix.csv: {len(genes)} genes x {len(meta_df)} samples")
    print(f"  - metadata.csv: {len(tissues)} tissues x 2 genotypes x 2 treatments x {n_replicates} replicates")
    print(f"  - config.json: analysis configuration")
