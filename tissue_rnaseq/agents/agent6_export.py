"""
Agent 6: Result Export

Collects per-contrast DE results and enrichment tables into analysis-ready
tables.

Input:
- contrasts.csv: From Agent 3
- deg_<tissue>__<contrast>.csv: From Agent 3
- enrichment_summary.csv, enrichment_*.csv: From Agent 5 (optional)

Output:
- all_contrasts_long.csv: Every contrast result stacked
- significant_genes.csv: Significant rows only
- wide_<tissue>.csv: One row per gene, log2FC / padj per contrast
- deg_summary.csv: Significant / up / down counts per tissue and contrast
- enrichment_long.csv: All enrichment tables stacked
- results_manifest.json: Every exported file with its row count
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.base_agent import BaseAgent
from ..utils.design import LEVEL_DTYPES

LONG_LEADING_COLUMNS = ['tissue', 'contrast', 'numerator', 'denominator']
WIDE_VALUES = ['log2FC', 'padj']


def to_wide(long_df: pd.DataFrame, values: Optional[List[str]] = None) -> pd.DataFrame:
    """Pivot one tissue's stacked results to one row per gene.

    Columns are named ``<value>__<contrast>`` in contrast order of appearance.
    """
    values = values or WIDE_VALUES
    contrasts = list(dict.fromkeys(long_df['contrast']))
    wide = long_df.pivot(index='gene_id', columns='contrast', values=values)

    ordered = [(value, contrast) for contrast in contrasts for value in values if (value, contrast) in wide.columns]
    wide = wide[ordered]
    wide.columns = [f"{value}__{contrast}" for value, contrast in ordered]
    return wide.reset_index()


class ExportAgent(BaseAgent):
    """Agent for exporting combined result tables."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "alpha": 0.05,
            "log2fc_cutoff": 1.0,
            "wide_values": WIDE_VALUES,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent6_export", input_dir, output_dir, merged_config)

        self.contrasts: Optional[pd.DataFrame] = None
        self.enrichment_summary: Optional[pd.DataFrame] = None
        self.manifest: List[Dict[str, Any]] = []

    def validate_inputs(self) -> bool:
        """Validate that DE results are available (enrichment is optional)."""
        self.contrasts = self.load_csv("contrasts.csv", dtype=LEVEL_DTYPES)
        self.enrichment_summary = self.load_csv("enrichment_summary.csv", required=False)

        ok = self.contrasts[self.contrasts['status'] == 'ok']
        missing = [f for f in ok['results_file'] if not (self.input_dir / f).exists()]
        if missing:
            self.logger.error(f"Missing DE result files: {missing}")
            return False

        self.logger.info(f"Contrasts to export: {len(ok)}")
        return True

    def _export(self, df: pd.DataFrame, filename: str, kind: str) -> None:
        self.save_csv(df, filename)
        self.manifest.append({'file': filename, 'kind': kind, 'rows': len(df)})

    def _load_long(self) -> pd.DataFrame:
        frames = []
        for _, row in self.contrasts[self.contrasts['status'] == 'ok'].iterrows():
            res = self.load_csv(row['results_file'])
            for col in LONG_LEADING_COLUMNS:
                res[col] = row[col]
            res['tissue_slug'] = row['tissue_slug']
            frames.append(res)

        if not frames:
            return pd.DataFrame(columns=LONG_LEADING_COLUMNS + ['tissue_slug', 'gene_id'])

        long_df = pd.concat(frames, ignore_index=True)
        leading = LONG_LEADING_COLUMNS + ['gene_id']
        rest = [c for c in long_df.columns if c not in leading]
        return long_df[leading + rest]

    def _deg_summary(self, long_df: pd.DataFrame) -> pd.DataFrame:
        summary = self.contrasts[['tissue', 'contrast', 'numerator', 'denominator', 'status']].copy()
        if long_df.empty:
            counts = pd.DataFrame(columns=['tissue', 'contrast', 'n_tested', 'n_significant', 'n_up', 'n_down'])
        else:
            counts = long_df.groupby(['tissue', 'contrast'], sort=False).agg(
                n_tested=('padj', lambda s: int(s.notna().sum())),
                n_up=('direction', lambda s: int((s == 'up').sum())),
                n_down=('direction', lambda s: int((s == 'down').sum())),
            ).reset_index()
            counts['n_significant'] = counts['n_up'] + counts['n_down']

        summary = summary.merge(counts, on=['tissue', 'contrast'], how='left')
        for col in ['n_tested', 'n_significant', 'n_up', 'n_down']:
            summary[col] = summary[col].fillna(0).astype(int)
        return summary[['tissue', 'contrast', 'numerator', 'denominator', 'status',
                        'n_tested', 'n_significant', 'n_up', 'n_down']]

    def _enrichment_long(self) -> pd.DataFrame:
        if self.enrichment_summary is None:
            self.logger.warning("No enrichment_summary.csv - enrichment_long.csv will be empty")
            return pd.DataFrame()

        frames = []
        for filename in self.enrichment_summary['results_file'].dropna().unique():
            frames.append(self.load_csv(filename))
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def run(self) -> Dict[str, Any]:
        """Write every export table and the manifest."""
        long_df = self._load_long()
        self._export(long_df.drop(columns=['tissue_slug']), "all_contrasts_long.csv", "de_long")

        if long_df.empty:
            significant = long_df
        elif 'direction' in long_df.columns:
            significant = long_df[long_df['direction'] != 'ns']
        else:
            significant = long_df[
                (long_df['padj'] < self.config["alpha"]) &
                (long_df['log2FC'].abs() > self.config["log2fc_cutoff"])
            ]
        self._export(significant.drop(columns=['tissue_slug']), "significant_genes.csv", "de_significant")

        n_wide = 0
        for slug, tissue_df in long_df.groupby('tissue_slug', sort=False):
            self._export(to_wide(tissue_df, self.config["wide_values"]), f"wide_{slug}.csv", "de_wide")
            n_wide += 1

        deg_summary = self._deg_summary(long_df)
        self._export(deg_summary, "deg_summary.csv", "de_summary")

        enrichment = self._enrichment_long()
        self._export(enrichment, "enrichment_long.csv", "enrichment_long")

        self.save_json({'files': self.manifest}, "results_manifest.json")

        self.logger.info(f"Export Complete:")
        self.logger.info(f"  DE rows: {len(long_df)} ({len(significant)} significant)")
        self.logger.info(f"  Wide tables: {n_wide}")
        self.logger.info(f"  Enrichment rows: {len(enrichment)}")

        return {
            "files_exported": len(self.manifest),
            "de_rows": len(long_df),
            "significant_rows": len(significant),
            "enrichment_rows": len(enrichment),
        }

    def validate_outputs(self) -> bool:
        """Validate export outputs."""
        for entry in self.manifest:
            if not (self.output_dir / entry['file']).exists():
                self.logger.error(f"Missing output file: {entry['file']}")
                return False

        if not (self.output_dir / "results_manifest.json").exists():
            self.logger.error("Missing results_manifest.json")
            return False

        return True
