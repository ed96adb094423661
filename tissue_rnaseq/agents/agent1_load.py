"""
Agent 1: Load Count Matrix and Sample Metadata

Reads the raw inputs, validates them and aligns metadata to the count matrix.

Input:
- count_matrix.csv: Gene expression count matrix (genes x samples, first column gene_id)
- metadata.csv: Sample metadata (sample_id, genotype, treatment, tissue[, cohort])

Output:
- counts.csv: Validated integer counts, samples in metadata order
- samples.csv: Aligned sample metadata
- library_sizes.csv: Total counts per sample
- meta_agent1_load.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.base_agent import BaseAgent
from ..utils.exceptions import InputDataError


class LoadAgent(BaseAgent):
    """Agent for loading and validating the count matrix and sample metadata."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "counts_file": "count_matrix.csv",
            "metadata_file": "metadata.csv",
            "sample_column": "sample_id",
            "genotype_column": "genotype",
            "treatment_column": "treatment",
            "tissue_column": "tissue",
            "cohort_column": "cohort",
            "round_counts": True,
            "exclude_samples": [],
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_load", input_dir, output_dir, merged_config)

        self.counts: Optional[pd.DataFrame] = None
        self.samples: Optional[pd.DataFrame] = None
        self.dropped_samples: List[str] = []

    def _required_columns(self) -> List[str]:
        return [
            self.config["sample_column"],
            self.config["genotype_column"],
            self.config["treatment_column"],
            self.config["tissue_column"],
        ]

    def _check_counts(self, counts: pd.DataFrame) -> pd.DataFrame:
        """Validate counts are non-negative integers; returns an int64 frame."""
        if counts.index.has_duplicates:
            dupes = counts.index[counts.index.duplicated()].unique().tolist()
            raise InputDataError(f"Duplicate gene ids in count matrix: {dupes[:10]}")

        numeric = counts.apply(pd.to_numeric, errors='coerce')
        if numeric.isna().any().any():
            bad = numeric.columns[numeric.isna().any()].tolist()
            raise InputDataError(f"Missing or non-numeric counts in samples: {bad}")

        if (numeric < 0).any().any():
            bad = numeric.columns[(numeric < 0).any()].tolist()
            raise InputDataError(f"Negative counts in samples: {bad}")

        values = numeric.to_numpy(dtype=float)
        if not np.allclose(values, np.round(values)):
            if not self.config["round_counts"]:
                raise InputDataError(
                    "Count matrix contains non-integer values; set round_counts to accept them"
                )
            self.logger.warning("Count matrix contains non-integer values - rounding to nearest integer")

        return numeric.round().astype(np.int64)

    def validate_inputs(self) -> bool:
        """Validate count matrix and metadata."""
        counts = self.load_csv(self.config["counts_file"], index_col=0)
        metadata = self.load_csv(self.config["metadata_file"])

        counts.index = counts.index.astype(str)
        counts.index.name = "gene_id"
        counts.columns = counts.columns.astype(str)

        # Check required columns exist
        missing_cols = [c for c in self._required_columns() if c not in metadata.columns]
        if missing_cols:
            self.logger.error(f"Metadata columns missing: {missing_cols}")
            return False

        sample_col = self.config["sample_column"]
        metadata[sample_col] = metadata[sample_col].astype(str)
        if metadata[sample_col].duplicated().any():
            dupes = metadata.loc[metadata[sample_col].duplicated(), sample_col].tolist()
            self.logger.error(f"Duplicate sample ids in metadata: {dupes}")
            return False

        covariates = self._required_columns()[1:]
        if metadata[covariates].isna().any().any():
            bad = metadata.loc[metadata[covariates].isna().any(axis=1), sample_col].tolist()
            self.logger.error(f"Missing covariate values for samples: {bad}")
            return False

        # Check sample IDs match
        count_samples = set(counts.columns)
        meta_samples = set(metadata[sample_col])

        if not count_samples.issubset(meta_samples):
            missing = sorted(count_samples - meta_samples)
            self.logger.error(f"Samples missing from metadata: {missing}")
            return False

        extra = sorted(meta_samples - count_samples)
        if extra:
            self.logger.warning(f"Metadata samples without counts (dropped): {extra}")
            self.dropped_samples.extend(extra)

        excluded = [str(s) for s in self.config.get("exclude_samples") or []]
        if excluded:
            self.logger.info(f"Excluding samples: {excluded}")
            self.dropped_samples.extend(s for s in excluded if s in count_samples)
            counts = counts.drop(columns=[s for s in excluded if s in counts.columns])

        self.counts = self._check_counts(counts)

        # Align metadata to count matrix column order
        samples = metadata.set_index(sample_col).loc[self.counts.columns]
        samples.index.name = sample_col
        self.samples = samples

        if len(self.counts.columns) == 0:
            self.logger.error("No samples left after alignment")
            return False

        self.logger.info(f"Count matrix: {self.counts.shape[0]} genes, {self.counts.shape[1]} samples")
        self.logger.info(f"Tissues: {sorted(self.samples[self.config['tissue_column']].astype(str).unique())}")

        return True

    def run(self) -> Dict[str, Any]:
        """Save validated inputs."""
        self.save_csv(self.counts, "counts.csv", index=True)
        self.save_csv(self.samples, "samples.csv", index=True)

        library_sizes = self.counts.sum(axis=0).rename("library_size").to_frame()
        library_sizes["detected_genes"] = (self.counts > 0).sum(axis=0)
        library_sizes.index.name = self.config["sample_column"]
        self.save_csv(library_sizes, "library_sizes.csv", index=True)

        tissue_col = self.config["tissue_column"]
        samples_per_tissue = self.samples[tissue_col].astype(str).value_counts().sort_index()

        self.logger.info(f"Load Complete:")
        self.logger.info(f"  Genes: {len(self.counts)}")
        self.logger.info(f"  Samples: {len(self.samples)}")
        for tissue, n in samples_per_tissue.items():
            self.logger.info(f"    {tissue}: {n} samples")

        return {
            "n_genes": int(self.counts.shape[0]),
            "n_samples": int(self.counts.shape[1]),
            "samples_per_tissue": {k: int(v) for k, v in samples_per_tissue.items()},
            "dropped_samples": self.dropped_samples,
        }

    def validate_outputs(self) -> bool:
        """Validate load outputs."""
        for filename in ["counts.csv", "samples.csv", "library_sizes.csv"]:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False
        return True
