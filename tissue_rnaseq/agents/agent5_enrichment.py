"""
Agent 5: Over-representation (ORA) Enrichment

Runs a GO over-representation test on the significant genes of every
contrast.

Input:
- contrasts.csv: From Agent 3
- deg_<tissue>__<contrast>.csv: From Agent 3

Output:
- enrichment_<tissue>__<contrast>[_<direction>].csv: Enriched terms
- figures/enrichment/dotplot_<tissue>__<contrast>[_<direction>]_<ontology>.png
- enrichment_summary.csv: One row per contrast / direction / ontology
- meta_agent5_enrichment.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import gseapy as gp

from ..utils.base_agent import BaseAgent
from ..utils.design import LEVEL_DTYPES
from ..utils.gene_ids import GeneIdMapper

# Enrichr libraries per GO ontology
ONTOLOGY_LIBRARIES = {
    "BP": "GO_Biological_Process_2023",
    "MF": "GO_Molecular_Function_2023",
    "CC": "GO_Cellular_Component_2023",
}

SUMMARY_COLUMNS = [
    'tissue', 'tissue_slug', 'contrast', 'direction', 'ontology', 'status',
    'n_genes', 'n_mapped', 'n_terms', 'n_terms_kept', 'results_file', 'error'
]

TERM_COLUMNS = [
    'tissue', 'contrast', 'direction', 'ontology', 'gene_set', 'term',
    'pvalue', 'padj', 'odds_ratio', 'combined_score', 'overlap', 'gene_count',
    'term_size', 'gene_ratio', 'bg_ratio', 'genes'
]


def jaccard(set1: Set[str], set2: Set[str]) -> float:
    """Jaccard similarity |A & B| / |A | B| (1.0 for two empty sets)."""
    if not set1 and not set2:
        return 1.0
    union = len(set1 | set2)
    if union == 0:
        return 0.0
    return len(set1 & set2) / union


def simplify_terms(terms: pd.DataFrame, cutoff: float) -> pd.DataFrame:
    """Drop terms whose genes overlap a more significant kept term.

    ``terms`` must carry ``padj`` and ``genes`` (``;``-separated). A term is
    removed when its Jaccard similarity to any kept term is >= ``cutoff``.
    """
    if terms.empty or cutoff >= 1:
        return terms

    ordered = terms.sort_values('padj', kind='mergesort')
    kept_index = []
    kept_sets: List[Set[str]] = []
    for idx, genes in ordered['genes'].items():
        gene_set = {g.strip().upper() for g in str(genes).split(';') if g.strip()}
        if any(jaccard(gene_set, other) >= cutoff for other in kept_sets):
            continue
        kept_index.append(idx)
        kept_sets.append(gene_set)

    return ordered.loc[kept_index]


def select_genes(res: pd.DataFrame, alpha: float, log2fc_cutoff: float, direction: str = "all") -> List[str]:
    """Gene ids passing padj < alpha and |log2FC| > cutoff (NA padj excluded)."""
    sig = res[res['padj'].notna() & (res['padj'] < alpha) & (res['log2FC'].abs() > log2fc_cutoff)]
    if direction == "up":
        sig = sig[sig['log2FC'] > 0]
    elif direction == "down":
        sig = sig[sig['log2FC'] < 0]
    return sig['gene_id'].astype(str).tolist()


class EnrichmentAgent(BaseAgent):
    """Agent for per-contrast GO over-representation analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "organism": "mouse",
            "ontologies": ["BP"],
            "gene_sets": None,  # Enrichr library, .gmt path or {term: [genes]}
            "alpha": 0.05,
            "log2fc_cutoff": 1.0,
            "min_genes": 10,
            "pvalue_cutoff": 0.05,
            "simplify_cutoff": 0.7,
            "top_n": 20,
            "split_direction": False,
            "use_tested_background": False,
            "gene_id_cache_dir": None,
            "figure_format": ["png", "pdf"],
            "dpi": 150,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent5_enrichment", input_dir, output_dir, merged_config)

        self.figures_dir = self.output_dir / "figures" / "enrichment"
        self.figures_dir.mkdir(parents=True, exist_ok=True)

        self.contrasts: Optional[pd.DataFrame] = None
        self.libraries: Dict[str, Any] = {}
        self.local_universe: Optional[Set[str]] = None
        self.mapper: Optional[GeneIdMapper] = None

    def _resolve_libraries(self) -> Dict[str, Any]:
        """Map each ontology label to what gseapy.enrichr accepts as gene_sets."""
        gene_sets = self.config.get("gene_sets")

        if isinstance(gene_sets, dict):
            return {"custom": {k: list(v) for k, v in gene_sets.items()}}

        if isinstance(gene_sets, str) and gene_sets.endswith(".gmt"):
            gmt_path = Path(gene_sets)
            if not gmt_path.is_absolute() and not gmt_path.exists():
                gmt_path = self.input_dir / gmt_path
            if not gmt_path.exists():
                raise FileNotFoundError(f"Gene set file not found: {gmt_path}")
            return {"custom": gp.read_gmt(str(gmt_path))}

        if isinstance(gene_sets, str):
            return {"custom": gene_sets}

        libraries = {}
        for ontology in self.config["ontologies"]:
            key = str(ontology).upper()
            if key not in ONTOLOGY_LIBRARIES:
                raise ValueError(f"Unknown ontology '{ontology}' (expected one of {list(ONTOLOGY_LIBRARIES)})")
            libraries[key] = ONTOLOGY_LIBRARIES[key]
        return libraries

    def validate_inputs(self) -> bool:
        """Validate contrast index and gene set configuration."""
        self.contrasts = self.load_csv("contrasts.csv", dtype=LEVEL_DTYPES)
        self.contrasts = self.contrasts[self.contrasts['status'] == 'ok']

        try:
            self.libraries = self._resolve_libraries()
        except ValueError as e:
            self.logger.error(str(e))
            return False

        local_sets = [v for v in self.libraries.values() if isinstance(v, dict)]
        if local_sets:
            self.local_universe = {
                str(g).upper() for sets in local_sets for genes in sets.values() for g in genes
            }

        self.mapper = GeneIdMapper(
            species=self.config["organism"],
            cache_dir=self.config.get("gene_id_cache_dir"),
        )

        self.logger.info(f"Contrasts to test: {len(self.contrasts)}")
        for ontology, gene_sets in self.libraries.items():
            source = gene_sets if isinstance(gene_sets, str) else f"{len(gene_sets)} local terms"
            self.logger.info(f"Gene sets [{ontology}]: {source}")
        return True

    def _run_enrichr(
        self,
        symbols: List[str],
        gene_sets: Any,
        background: Optional[List[str]]
    ) -> pd.DataFrame:
        """Run one Enrichr / local ORA test and return the raw result table."""
        enr = gp.enrichr(
            gene_list=symbols,
            gene_sets=gene_sets,
            organism=self.config["organism"],
            background=background,
            outdir=None,  # Don't save files
            cutoff=1.0,  # Filtered below
            no_plot=True
        )
        return enr.results

    def _format_terms(
        self,
        results: pd.DataFrame,
        n_query: int,
        bg_size: Optional[int]
    ) -> pd.DataFrame:
        """Filter by adjusted p-value and add gene / background ratios."""
        if results is None or results.empty or 'Adjusted P-value' not in results.columns:
            return pd.DataFrame(columns=TERM_COLUMNS)

        results = results[results['Adjusted P-value'] < self.config["pvalue_cutoff"]].copy()
        if results.empty:
            return pd.DataFrame(columns=TERM_COLUMNS)

        results = results.rename(columns={
            'Gene_set': 'gene_set',
            'Term': 'term',
            'P-value': 'pvalue',
            'Adjusted P-value': 'padj',
            'Odds Ratio': 'odds_ratio',
            'Combined Score': 'combined_score',
            'Overlap': 'overlap',
            'Genes': 'genes'
        })
        overlap = results['overlap'].astype(str).str.split('/', n=1, expand=True)
        results['gene_count'] = overlap[0].astype(int)
        results['term_size'] = overlap[1].astype(int)
        results['gene_ratio'] = results['gene_count'] / max(n_query, 1)
        results['bg_ratio'] = results['term_size'] / bg_size if bg_size else np.nan

        return results.sort_values('padj')

    def _dotplot(self, terms: pd.DataFrame, title: str, name: str) -> None:
        """Dot plot: x = gene ratio, colour = adjusted p-value, size = gene count."""
        plot_df = terms.sort_values('padj').head(self.config["top_n"])
        plot_df = plot_df.sort_values('gene_ratio')
        labels = [t if len(t) <= 60 else t[:57] + '...' for t in plot_df['term'].astype(str)]

        fig, ax = plt.subplots(figsize=(6.5, max(4, 0.35 * len(plot_df) + 1.5)))
        scatter = ax.scatter(
            plot_df['gene_ratio'], range(len(plot_df)),
            c=plot_df['padj'], cmap='RdBu', s=plot_df['gene_count'] * 15,
            edgecolors='black', linewidth=0.4
        )
        ax.set_yticks(range(len(plot_df)))
        ax.set_yticklabels(labels, fontsize=8)
        ax.set_xlabel('Gene Ratio')
        ax.set_title(title, fontsize=11)
        ax.grid(axis='x', alpha=0.3)

        cbar = fig.colorbar(scatter, ax=ax, shrink=0.5)
        cbar.set_label('Adjusted P-value')

        handles, size_labels = scatter.legend_elements(prop="sizes", num=4, alpha=0.6,
                                                       func=lambda s: s / 15)
        ax.legend(handles, size_labels, title='Count', loc='lower right', fontsize=7)

        plt.tight_layout()
        for fmt in self.config["figure_format"]:
            filepath = self.figures_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight', facecolor='white')
            self.logger.info(f"Saved enrichment/{filepath.name}")
        plt.close(fig)

    def _enrich_contrast(
        self,
        row: pd.Series,
        res: pd.DataFrame,
        symbol_map: Dict[str, Optional[str]],
        background: Optional[List[str]]
    ) -> List[Dict[str, Any]]:
        """Run every direction / ontology of one contrast; returns summary rows."""
        tissue, slug, contrast = row['tissue'], row['tissue_slug'], row['contrast']
        directions = ["all", "up", "down"] if self.config["split_direction"] else ["all"]
        summary = []

        for direction in directions:
            base = {'tissue': tissue, 'tissue_slug': slug, 'contrast': contrast, 'direction': direction}
            genes = select_genes(res, self.config["alpha"], self.config["log2fc_cutoff"], direction)
            symbols = sorted({symbol_map[g] for g in genes if symbol_map.get(g)})
            counts = {'n_genes': len(genes), 'n_mapped': len(symbols)}

            if len(genes) < self.config["min_genes"] or len(symbols) < self.config["min_genes"]:
                self.logger.warning(
                    f"[{tissue}] {contrast} ({direction}): {len(genes)} significant genes, "
                    f"{len(symbols)} mapped (< {self.config['min_genes']}) - skipping enrichment"
                )
                for ontology in self.libraries:
                    summary.append({**base, **counts, 'ontology': ontology, 'status': 'skipped'})
                continue

            if len(symbols) < len(genes):
                self.logger.info(f"[{tissue}] {contrast} ({direction}): {len(genes) - len(symbols)} ids without a symbol dropped")

            suffix = "" if direction == "all" else f"_{direction}"
            results_file = f"enrichment_{slug}__{contrast}{suffix}.csv"
            tables = []

            for ontology, gene_sets in self.libraries.items():
                entry = {**base, **counts, 'ontology': ontology}
                if background is not None:
                    bg_size = len(background)
                elif isinstance(gene_sets, dict):
                    bg_size = len(self.local_universe)
                else:
                    bg_size = None

                try:
                    raw = self._run_enrichr(symbols, gene_sets, background)
                    terms = self._format_terms(raw, len(symbols), bg_size)
                except Exception as e:
                    self.logger.error(f"[{tissue}] {contrast} ({direction}, {ontology}) enrichment failed: {e}")
                    summary.append({**entry, 'status': 'failed', 'error': str(e)})
                    continue

                kept = simplify_terms(terms, self.config["simplify_cutoff"])
                entry.update({'n_terms': len(terms), 'n_terms_kept': len(kept)})
                self.logger.info(
                    f"[{tissue}] {contrast} ({direction}, {ontology}): "
                    f"{len(terms)} terms, {len(kept)} after simplification"
                )

                if kept.empty:
                    summary.append({**entry, 'status': 'no_terms'})
                    continue

                kept = kept.assign(tissue=tissue, contrast=contrast, direction=direction, ontology=ontology)
                tables.append(kept)
                summary.append({**entry, 'status': 'ok', 'results_file': results_file})

                try:
                    self._dotplot(
                        kept,
                        title=f"{tissue}: {contrast} ({direction}, GO {ontology})",
                        name=f"dotplot_{slug}__{contrast}{suffix}_{ontology}",
                    )
                except Exception as e:
                    self.logger.error(f"Error generating dot plot for {contrast}: {e}")
                    plt.close('all')

            if tables:
                combined = pd.concat(tables, ignore_index=True)
                self.save_csv(combined.reindex(columns=TERM_COLUMNS), results_file)

        return summary

    def run(self) -> Dict[str, Any]:
        """Execute enrichment for every contrast."""
        summary_rows = []

        for slug, tissue_contrasts in self.contrasts.groupby('tissue_slug', sort=False):
            tables = {}
            for _, row in tissue_contrasts.iterrows():
                res = self.load_csv(row['results_file'])
                res['gene_id'] = res['gene_id'].astype(str)
                tables[row['contrast']] = res

            tissue = tissue_contrasts['tissue'].iloc[0]
            tested = sorted({g for res in tables.values() for g in res.loc[res['padj'].notna(), 'gene_id']})
            try:
                symbol_map = self.mapper.to_symbols(tested)
            except Exception as e:
                self.logger.error(f"[{tissue}] Gene id mapping failed: {e}")
                for _, row in tissue_contrasts.iterrows():
                    summary_rows.append({
                        'tissue': tissue, 'tissue_slug': slug, 'contrast': row['contrast'],
                        'direction': 'all', 'status': 'failed', 'error': f"gene id mapping: {e}",
                    })
                continue

            background = None
            if self.config["use_tested_background"]:
                background = sorted({s for s in symbol_map.values() if s})
                self.logger.info(f"[{tissue}] Background: {len(background)} tested genes")

            for _, row in tissue_contrasts.iterrows():
                summary_rows.extend(self._enrich_contrast(row, tables[row['contrast']], symbol_map, background))

        summary = pd.DataFrame(summary_rows, columns=SUMMARY_COLUMNS)
        self.save_csv(summary, "enrichment_summary.csv")

        status_counts = summary['status'].value_counts().to_dict()
        total_terms = int(pd.to_numeric(summary['n_terms_kept'], errors='coerce').fillna(0).sum())

        self.logger.info(f"Enrichment Complete:")
        for status, n in status_counts.items():
            self.logger.info(f"  {status}: {n}")
        self.logger.info(f"  Terms kept (total): {total_terms}")

        return {
            "ontologies": list(self.libraries),
            "status_counts": {k: int(v) for k, v in status_counts.items()},
            "total_terms": total_terms,
            "min_genes": self.config["min_genes"],
            "pvalue_cutoff": self.config["pvalue_cutoff"],
        }

    def validate_outputs(self) -> bool:
        """Validate enrichment outputs."""
        summary_file = self.output_dir / "enrichment_summary.csv"
        if not summary_file.exists():
            self.logger.error("Missing enrichment_summary.csv")
            return False

        summary = pd.read_csv(summary_file)
        for filename in summary['results_file'].dropna().unique():
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        if (summary['status'] == 'ok').sum() == 0:
            self.logger.warning("No enriched terms found - this may be expected for some datasets")

        return True
