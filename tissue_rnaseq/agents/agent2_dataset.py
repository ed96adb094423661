"""
Agent 2: Per-tissue Grouped Datasets

Splits the validated count matrix by tissue, annotates each sample with the
combined genotype x treatment group, filters low-count genes and plans the
pairwise contrasts for each tissue.

Input:
- counts.csv, samples.csv: From Agent 1

Output:
- counts_<tissue>.csv: Filtered counts for one tissue
- samples_<tissue>.csv: Sample metadata with the group column
- datasets.csv: One row per tissue (design, groups, gene counts, status)
- planned_contrasts.csv: tissue, contrast, numerator, denominator
- meta_agent2_dataset.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.base_agent import BaseAgent
from ..utils.design import (
    GROUP_COLUMN,
    build_group_factor,
    contrast_label,
    design_formula,
    filter_low_counts,
    make_contrasts,
    sanitize_level,
    slugify,
)

DATASET_COLUMNS = [
    'tissue', 'tissue_slug', 'status', 'n_samples', 'n_groups', 'groups',
    'design', 'genes_before', 'genes_after', 'counts_file', 'samples_file'
]


class DatasetAgent(BaseAgent):
    """Agent for building per-tissue grouped datasets."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "sample_column": "sample_id",
            "genotype_column": "genotype",
            "treatment_column": "treatment",
            "tissue_column": "tissue",
            "cohort_column": "cohort",
            "tissues": None,
            "group_separator": ".",
            "reference_genotype": None,
            "reference_treatment": None,
            "min_count": 10,
            "min_samples": None,
            "min_replicates": 2,
            "use_cohort_covariate": True,
            "contrast_mode": "all_pairs",
            "contrasts": None,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_dataset", input_dir, output_dir, merged_config)

        self.counts: Optional[pd.DataFrame] = None
        self.samples: Optional[pd.DataFrame] = None
        self.tissues: List[str] = []

    def validate_inputs(self) -> bool:
        """Validate counts and samples from Agent 1."""
        self.counts = self.load_csv("counts.csv", index_col=0)
        self.samples = self.load_csv("samples.csv", index_col=0)

        self.counts.columns = self.counts.columns.astype(str)
        self.samples.index = self.samples.index.astype(str)

        tissue_col = self.config["tissue_column"]
        if tissue_col not in self.samples.columns:
            self.logger.error(f"Tissue column '{tissue_col}' not in samples")
            return False

        if list(self.counts.columns) != list(self.samples.index):
            self.logger.error("Count matrix columns and sample rows are not aligned")
            return False

        available = list(dict.fromkeys(self.samples[tissue_col].astype(str)))
        requested = self.config.get("tissues")
        if requested:
            requested = [str(t) for t in requested]
            unknown = [t for t in requested if t not in available]
            if unknown:
                self.logger.error(f"Requested tissues not in metadata: {unknown} (available: {available})")
                return False
            self.tissues = requested
        else:
            self.tissues = available

        self.logger.info(f"Tissues to process: {self.tissues}")
        return True

    def _drop_small_groups(self, grouped: pd.DataFrame, levels: List[str], tissue: str):
        """Remove groups with fewer than ``min_replicates`` samples."""
        min_rep = self.config["min_replicates"]
        sizes = grouped[GROUP_COLUMN].value_counts()
        small = [lvl for lvl in levels if sizes.get(lvl, 0) < min_rep]
        if not small:
            return grouped, levels

        self.logger.warning(f"[{tissue}] Dropping groups with < {min_rep} replicates: {small}")
        kept_levels = [lvl for lvl in levels if lvl not in small]
        grouped = grouped[grouped[GROUP_COLUMN].isin(kept_levels)].copy()
        grouped[GROUP_COLUMN] = pd.Categorical(grouped[GROUP_COLUMN].astype(str), categories=kept_levels)
        return grouped, kept_levels

    def _build_tissue(self, tissue: str):
        """Build one grouped dataset. Returns (dataset row, contrast rows)."""
        cfg = self.config
        slug = slugify(tissue)
        row = {col: None for col in DATASET_COLUMNS}
        row.update({'tissue': tissue, 'tissue_slug': slug})

        samples = self.samples[self.samples[cfg["tissue_column"]].astype(str) == tissue].copy()
        cohort_col = cfg.get("cohort_column")
        if cohort_col and cohort_col in samples.columns:
            samples[cohort_col] = samples[cohort_col].map(sanitize_level)

        grouped, levels = build_group_factor(
            samples,
            genotype_column=cfg["genotype_column"],
            treatment_column=cfg["treatment_column"],
            separator=cfg["group_separator"],
            reference_genotype=cfg.get("reference_genotype"),
            reference_treatment=cfg.get("reference_treatment"),
        )
        grouped, levels = self._drop_small_groups(grouped, levels, tissue)

        row.update({'n_samples': len(grouped), 'n_groups': len(levels), 'groups': '|'.join(levels)})
        if len(levels) < 2:
            self.logger.warning(f"[{tissue}] Fewer than two groups left - skipping tissue")
            row['status'] = 'skipped'
            return row, []

        counts = self.counts[grouped.index]
        filtered = filter_low_counts(
            counts,
            min_count=cfg["min_count"],
            min_samples=cfg.get("min_samples"),
            groups=grouped[GROUP_COLUMN],
        )
        design = design_formula(grouped, cohort_col, cfg["use_cohort_covariate"])
        contrasts = make_contrasts(levels, mode=cfg["contrast_mode"], explicit=cfg.get("contrasts"))

        self.logger.info(
            f"[{tissue}] {len(grouped)} samples, groups {levels}, design '{design}', "
            f"genes {len(counts)} -> {len(filtered)}, {len(contrasts)} contrasts"
        )

        if filtered.empty:
            self.logger.warning(f"[{tissue}] No genes pass the low-count filter - skipping tissue")
            row.update({'status': 'skipped', 'design': design, 'genes_before': len(counts), 'genes_after': 0})
            return row, []

        counts_file = f"counts_{slug}.csv"
        samples_file = f"samples_{slug}.csv"
        self.save_csv(filtered, counts_file, index=True)
        self.save_csv(grouped, samples_file, index=True)

        row.update({
            'status': 'ok' if contrasts else 'no_contrasts',
            'design': design,
            'genes_before': len(counts),
            'genes_after': len(filtered),
            'counts_file': counts_file,
            'samples_file': samples_file,
        })
        contrast_rows = [
            {
                'tissue': tissue,
                'tissue_slug': slug,
                'contrast': contrast_label(num, den),
                'numerator': num,
                'denominator': den,
            }
            for num, den in contrasts
        ]
        return row, contrast_rows

    def run(self) -> Dict[str, Any]:
        """Build every requested tissue dataset."""
        dataset_rows = []
        contrast_rows = []

        for tissue in self.tissues:
            row, contrasts = self._build_tissue(tissue)
            dataset_rows.append(row)
            contrast_rows.extend(contrasts)

        datasets = pd.DataFrame(dataset_rows, columns=DATASET_COLUMNS)
        planned = pd.DataFrame(
            contrast_rows,
            columns=['tissue', 'tissue_slug', 'contrast', 'numerator', 'denominator']
        )
        self.save_csv(datasets, "datasets.csv")
        self.save_csv(planned, "planned_contrasts.csv")

        n_ok = int((datasets['status'] == 'ok').sum())

        self.logger.info(f"Dataset Construction Complete:")
        self.logger.info(f"  Tissues usable: {n_ok}/{len(datasets)}")
        self.logger.info(f"  Contrasts planned: {len(planned)}")

        return {
            "tissues": self.tissues,
            "tissues_ok": n_ok,
            "contrasts_planned": len(planned),
        }

    def validate_outputs(self) -> bool:
        """Validate dataset outputs."""
        datasets_file = self.output_dir / "datasets.csv"
        if not datasets_file.exists():
            self.logger.error("Missing datasets.csv")
            return False

        datasets = pd.read_csv(datasets_file)
        if (datasets['status'] == 'ok').sum() == 0:
            self.logger.error("No tissue has at least two groups with enough replicates")
            return False

        for filename in datasets['counts_file'].dropna():
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        return True
