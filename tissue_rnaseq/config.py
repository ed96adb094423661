"""Configuration settings for the tissue RNA-seq pipeline."""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "TISSUE_RNASEQ_"

DEFAULT_CONFIG: Dict[str, Any] = {
    # Input files
    "counts_file": "count_matrix.csv",
    "metadata_file": "metadata.csv",
    "round_counts": True,
    "exclude_samples": [],

    # Metadata columns
    "sample_column": "sample_id",
    "genotype_column": "genotype",
    "treatment_column": "treatment",
    "tissue_column": "tissue",
    "cohort_column": "cohort",

    # Grouped datasets
    "tissues": None,  # None = every tissue in the metadata
    "group_separator": ".",
    "reference_genotype": None,
    "reference_treatment": None,
    "min_count": 10,
    "min_samples": None,  # None = smallest group size
    "min_replicates": 2,
    "use_cohort_covariate": True,

    # Differential expression
    "de_backend": "pydeseq2",  # pydeseq2 | deseq2_r
    "contrast_mode": "all_pairs",  # all_pairs | vs_reference
    "contrasts": None,  # explicit [[numerator, denominator], ...]
    "alpha": 0.05,
    "log2fc_cutoff": 1.0,
    "shrink_lfc": False,
    "n_jobs": 1,
    "n_cpus": 1,

    # Enrichment
    "organism": "mouse",
    "ontologies": ["BP"],
    "gene_sets": None,  # Enrichr library name, GMT path or {term: [genes]}
    "min_genes": 10,
    "pvalue_cutoff": 0.05,
    "simplify_cutoff": 0.7,
    "top_n": 20,
    "split_direction": False,
    "use_tested_background": False,
    "gene_id_cache_dir": None,  # None = ~/.tissue_rnaseq_cache

    # Figures
    "figure_format": ["png", "pdf"],
    "dpi": 150,
    "label_symbols": True,  # map Ensembl ids to symbols for plot labels

    "verbose": False,
}

# Keys that may be overridden from the environment (or a .env file)
ENV_KEYS = {
    "de_backend": str,
    "organism": str,
    "n_jobs": int,
    "n_cpus": int,
    "alpha": float,
    "log2fc_cutoff": float,
}


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for key, cast in ENV_KEYS.items():
        value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
        if value is None or value == "":
            continue
        try:
            overrides[key] = cast(value)
        except ValueError as e:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{key.upper()}: {value!r}") from e
    return overrides


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Merge defaults < JSON config file < environment < explicit overrides."""
    config = dict(DEFAULT_CONFIG)

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, 'r', encoding='utf-8') as f:
            file_config = json.load(f)
        unknown = set(file_config) - set(DEFAULT_CONFIG)
        if unknown:
            logger.debug(f"Config keys without defaults: {sorted(unknown)}")
        config.update(file_config)

    config.update(_env_overrides())
    config.update({k: v for k, v in (overrides or {}).items() if v is not None})

    return config
