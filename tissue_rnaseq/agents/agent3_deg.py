"""
Agent 3: Differential Expression Gene (DEG) Analysis

Fits one DESeq2 model per tissue and extracts every planned pairwise
contrast between genotype x treatment groups.

Input:
- datasets.csv, planned_contrasts.csv: From Agent 2
- counts_<tissue>.csv, samples_<tissue>.csv: From Agent 2

Output:
- deg_<tissue>__<contrast>.csv: Full DESeq2 results per contrast
- normalized_counts_<tissue>.csv: Size-factor normalized counts
- vst_counts_<tissue>.csv: Variance-stabilized counts
- size_factors_<tissue>.csv, dispersions_<tissue>.csv: Model diagnostics
- contrasts.csv: One row per contrast with DEG counts and status
- meta_agent3_deg.json: Execution metadata
"""

import logging
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from joblib import Parallel, delayed

from ..backends import BACKEND_NAMES, get_backend
from ..utils.base_agent import BaseAgent
from ..utils.design import GROUP_COLUMN, LEVEL_DTYPES, contrast_label

logger = logging.getLogger(__name__)

CONTRAST_COLUMNS = [
    'tissue', 'tissue_slug', 'contrast', 'numerator', 'denominator', 'status',
    'n_tested', 'n_significant', 'n_up', 'n_down', 'results_file', 'error'
]


def assign_direction(results_df: pd.DataFrame, alpha: float, log2fc_cutoff: float) -> pd.DataFrame:
    """Add ``direction`` (up / down / ns) and sort by padj (NA last)."""
    results_df = results_df.copy()
    significant = (results_df['padj'] < alpha) & (results_df['log2FC'].abs() > log2fc_cutoff)
    results_df['direction'] = np.where(
        significant,
        np.where(results_df['log2FC'] > 0, 'up', 'down'),
        'ns'
    )
    return results_df.sort_values('padj', na_position='last').reset_index(drop=True)


def analyze_tissue(
    tissue: str,
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    design: str,
    contrasts: List[Tuple[str, str]],
    config: Dict[str, Any]
) -> Dict[str, Any]:
    """Fit one tissue and extract its contrasts.

    Contrast failures are collected in ``errors`` so the remaining contrasts
    still run. A failed fit is raised to the caller.
    """
    backend = get_backend(config["de_backend"], config)
    backend.fit(counts, samples, design)

    results: Dict[Tuple[str, str], pd.DataFrame] = {}
    errors: Dict[Tuple[str, str], str] = {}
    for numerator, denominator in contrasts:
        logger.info(f"[{tissue}] Extracting {numerator} vs {denominator}")
        try:
            res = backend.contrast(numerator, denominator)
        except Exception as e:
            logger.error(f"[{tissue}] Contrast {numerator} vs {denominator} failed: {e}")
            errors[(numerator, denominator)] = str(e)
            continue
        results[(numerator, denominator)] = assign_direction(
            res, config["alpha"], config["log2fc_cutoff"]
        )

    return {
        "results": results,
        "errors": errors,
        "normalized_counts": backend.normalized_counts(),
        "vst_counts": backend.vst_counts(),
        "size_factors": backend.size_factors(),
        "dispersions": backend.dispersions(),
    }


class DEGAgent(BaseAgent):
    """Agent for per-tissue DESeq2 differential expression analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "de_backend": "pydeseq2",
            "alpha": 0.05,
            "log2fc_cutoff": 1.0,
            "shrink_lfc": False,
            "n_jobs": 1,
            "n_cpus": 1,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_deg", input_dir, output_dir, merged_config)

        self.datasets: Optional[pd.DataFrame] = None
        self.planned: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate dataset index and per-tissue files."""
        self.datasets = self.load_csv("datasets.csv", dtype={"groups": str})
        self.planned = self.load_csv("planned_contrasts.csv", dtype=LEVEL_DTYPES)

        self.datasets = self.datasets[self.datasets['status'] == 'ok']
        if self.datasets.empty:
            self.logger.error("No usable tissue datasets")
            return False

        for _, row in self.datasets.iterrows():
            for col in ('counts_file', 'samples_file'):
                if not (self.input_dir / row[col]).exists():
                    self.logger.error(f"[{row['tissue']}] Missing {row[col]}")
                    return False

        if self.config["de_backend"] not in BACKEND_NAMES:
            self.logger.error(f"Unknown DE backend: {self.config['de_backend']}")
            return False

        self.logger.info(f"Backend: {self.config['de_backend']}, tissues: {self.datasets['tissue'].tolist()}")
        return True

    def _load_tissue(self, row: pd.Series):
        counts = self.load_csv(row['counts_file'], index_col=0)
        counts.index = counts.index.astype(str)
        counts.columns = counts.columns.astype(str)

        samples = self.load_csv(row['samples_file'], index_col=0, dtype={GROUP_COLUMN: str})
        samples.index = samples.index.astype(str)
        levels = str(row['groups']).split('|')
        samples[GROUP_COLUMN] = pd.Categorical(samples[GROUP_COLUMN].astype(str), categories=levels)

        planned = self.planned[self.planned['tissue_slug'] == row['tissue_slug']]
        contrasts = list(zip(planned['numerator'].astype(str), planned['denominator'].astype(str)))
        return counts, samples, contrasts

    def _run_one(self, row: pd.Series) -> Dict[str, Any]:
        counts, samples, contrasts = self._load_tissue(row)
        try:
            return analyze_tissue(row['tissue'], counts, samples, row['design'], contrasts, self.config)
        except Exception as e:
            self.logger.error(f"[{row['tissue']}] DESeq2 fit failed: {e}")
            return {"fit_error": str(e), "contrasts": contrasts}

    def _save_tissue(self, row: pd.Series, outcome: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Write one tissue's outputs and return its contrast index rows."""
        tissue, slug = row['tissue'], row['tissue_slug']
        rows = []

        if "fit_error" in outcome:
            for numerator, denominator in outcome["contrasts"]:
                rows.append({
                    'tissue': tissue, 'tissue_slug': slug,
                    'contrast': contrast_label(numerator, denominator),
                    'numerator': numerator, 'denominator': denominator,
                    'status': 'failed', 'error': outcome["fit_error"],
                })
            return rows

        self.save_csv(outcome["normalized_counts"].rename_axis("gene_id"), f"normalized_counts_{slug}.csv", index=True)
        self.save_csv(outcome["vst_counts"].rename_axis("gene_id"), f"vst_counts_{slug}.csv", index=True)
        self.save_csv(outcome["size_factors"].rename_axis("sample_id").to_frame(), f"size_factors_{slug}.csv", index=True)
        self.save_csv(outcome["dispersions"], f"dispersions_{slug}.csv", index=True)

        for (numerator, denominator), error in outcome["errors"].items():
            rows.append({
                'tissue': tissue, 'tissue_slug': slug,
                'contrast': contrast_label(numerator, denominator),
                'numerator': numerator, 'denominator': denominator,
                'status': 'failed', 'error': error,
            })

        for (numerator, denominator), res in outcome["results"].items():
            contrast = contrast_label(numerator, denominator)
            results_file = f"deg_{slug}__{contrast}.csv"
            self.save_csv(res, results_file)
            n_up = int((res['direction'] == 'up').sum())
            n_down = int((res['direction'] == 'down').sum())
            self.logger.info(f"[{tissue}] {contrast}: {n_up} up, {n_down} down")
            rows.append({
                'tissue': tissue, 'tissue_slug': slug, 'contrast': contrast,
                'numerator': numerator, 'denominator': denominator, 'status': 'ok',
                'n_tested': int(res['padj'].notna().sum()),
                'n_significant': n_up + n_down, 'n_up': n_up, 'n_down': n_down,
                'results_file': results_file,
            })
        return rows

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis for every tissue."""
        rows = [row for _, row in self.datasets.iterrows()]
        n_jobs = int(self.config["n_jobs"])

        if n_jobs > 1 and len(rows) > 1:
            self.logger.info(f"Fitting {len(rows)} tissues with {n_jobs} parallel jobs...")
            outcomes = Parallel(n_jobs=n_jobs, prefer="threads")(
                delayed(self._run_one)(row) for row in rows
            )
        else:
            outcomes = [self._run_one(row) for row in rows]

        contrast_rows = []
        failed_tissues = []
        for row, outcome in zip(rows, outcomes):
            if "fit_error" in outcome:
                failed_tissues.append(row['tissue'])
            contrast_rows.extend(self._save_tissue(row, outcome))

        contrasts_df = pd.DataFrame(contrast_rows, columns=CONTRAST_COLUMNS)
        self.save_csv(contrasts_df, "contrasts.csv")

        if len(failed_tissues) == len(rows):
            raise RuntimeError(f"DESeq2 failed for every tissue: {failed_tissues}")

        ok = contrasts_df[contrasts_df['status'] == 'ok']

        self.logger.info(f"DEG Analysis Complete:")
        self.logger.info(f"  Tissues fitted: {len(rows) - len(failed_tissues)}/{len(rows)}")
        self.logger.info(f"  Contrasts: {len(ok)} ok, {len(contrasts_df) - len(ok)} failed")
        self.logger.info(f"  Significant DEGs (sum over contrasts): {int(ok['n_significant'].sum())}")

        return {
            "backend": self.config["de_backend"],
            "tissues_fitted": len(rows) - len(failed_tissues),
            "failed_tissues": failed_tissues,
            "contrasts_ok": len(ok),
            "contrasts_failed": len(contrasts_df) - len(ok),
            "alpha": self.config["alpha"],
            "log2fc_cutoff": self.config["log2fc_cutoff"],
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        contrasts_file = self.output_dir / "contrasts.csv"
        if not contrasts_file.exists():
            self.logger.error("Missing contrasts.csv")
            return False

        contrasts_df = pd.read_csv(contrasts_file)
        for filename in contrasts_df['results_file'].dropna():
            filepath = self.output_dir / filename
            if not filepath.exists():
                self.logger.error(f"Missing output file: {filename}")
                return False
            res = pd.read_csv(filepath, nrows=5)
            if 'padj' not in res.columns or 'log2FC' not in res.columns:
                self.logger.error(f"Malformed results file: {filename}")
                return False

        if (contrasts_df['status'] == 'ok').sum() == 0:
            self.logger.warning("No contrast produced results")

        return True
