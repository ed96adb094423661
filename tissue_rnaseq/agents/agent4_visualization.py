"""
Agent 4: Visualization

Generates diagnostic and result figures per tissue and per contrast.

Input:
- datasets.csv, contrasts.csv: From Agents 2 and 3
- samples_<tissue>.csv, library_sizes.csv
- vst_counts_<tissue>.csv, dispersions_<tissue>.csv
- deg_<tissue>__<contrast>.csv

Output:
- figures/<tissue>/library_sizes.png
- figures/<tissue>/pca_plot.png
- figures/<tissue>/sample_distances.png
- figures/<tissue>/dispersion_plot.png
- figures/<tissue>/volcano_<contrast>.png
- figures/<tissue>/ma_<contrast>.png
- figures/<tissue>/heatmap_<contrast>.png
- figures.csv: Index of generated figures
- meta_agent4_visualization.json
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from ..utils.base_agent import BaseAgent
from ..utils.design import GROUP_COLUMN, LEVEL_DTYPES
from ..utils.gene_ids import GeneIdMapper, is_ensembl

DIRECTION_COLORS = {'ns': 'lightgray', 'up': '#E74C3C', 'down': '#3498DB'}


class VisualizationAgent(BaseAgent):
    """Agent for generating diagnostic and result figures."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "figure_format": ["png", "pdf"],
            "dpi": 150,
            "style": "whitegrid",
            "color_palette": "RdBu_r",
            "figsize": {
                "library": (8, 5),
                "pca": (8, 6),
                "distances": (9, 8),
                "dispersion": (7, 6),
                "volcano": (8, 7),
                "ma": (8, 6),
                "heatmap": (10, 10),
            },
            "pca_top_genes": 500,
            "top_genes_heatmap": 50,
            "label_top_genes": 10,
            "label_symbols": True,
            "organism": "mouse",
            "gene_id_cache_dir": None,
            "alpha": 0.05,
            "log2fc_cutoff": 1.0,
            "genotype_column": "genotype",
            "treatment_column": "treatment",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent4_visualization", input_dir, output_dir, merged_config)

        # Create figures subdirectory
        self.figures_dir = self.output_dir / "figures"
        self.figures_dir.mkdir(exist_ok=True)

        self.datasets: Optional[pd.DataFrame] = None
        self.contrasts: Optional[pd.DataFrame] = None
        self.library_sizes: Optional[pd.DataFrame] = None
        self.figure_rows: List[Dict[str, str]] = []
        self.mapper: Optional[GeneIdMapper] = None

        # Set style
        sns.set_style(self.config["style"])
        plt.rcParams['font.size'] = 11
        plt.rcParams['axes.labelsize'] = 12
        plt.rcParams['axes.titlesize'] = 13

    def validate_inputs(self) -> bool:
        """Validate input files."""
        self.datasets = self.load_csv("datasets.csv")
        self.contrasts = self.load_csv("contrasts.csv", dtype=LEVEL_DTYPES)
        self.library_sizes = self.load_csv("library_sizes.csv", required=False, index_col=0)

        self.datasets = self.datasets[self.datasets['status'] == 'ok']
        if self.datasets.empty:
            self.logger.error("No tissue datasets to plot")
            return False

        return True

    def _save_figure(self, fig: plt.Figure, tissue_slug: str, name: str, contrast: str = "") -> List[str]:
        """Save figure in multiple formats."""
        saved_files = []
        target_dir = self.figures_dir / tissue_slug
        target_dir.mkdir(parents=True, exist_ok=True)
        for fmt in self.config["figure_format"]:
            filepath = target_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.figure_rows.append({
                'tissue_slug': tissue_slug,
                'contrast': contrast,
                'figure': name,
                'file': str(filepath.relative_to(self.output_dir)),
            })
            self.logger.info(f"Saved {tissue_slug}/{filepath.name}")
        plt.close(fig)
        return saved_files

    def _gene_labels(self, gene_ids: List[str]) -> Dict[str, str]:
        """Plot labels: Ensembl ids become symbols where mygene knows them."""
        labels = {g: g for g in gene_ids}
        if not self.config["label_symbols"] or not any(is_ensembl(g) for g in gene_ids):
            return labels

        if self.mapper is None:
            self.mapper = GeneIdMapper(
                species=self.config["organism"],
                cache_dir=self.config.get("gene_id_cache_dir")
            )
        try:
            symbols = self.mapper.to_symbols(gene_ids)
        except Exception as e:
            self.logger.warning(f"Symbol lookup failed ({e}); labelling with gene ids")
            return labels

        labels.update({g: s for g, s in symbols.items() if s})
        return labels

    # ------------------------------------------------------------------
    # Per-tissue diagnostics
    # ------------------------------------------------------------------

    def _plot_library_sizes(self, slug: str, samples: pd.DataFrame) -> Optional[List[str]]:
        """Bar plot of total counts per sample, coloured by group."""
        if self.library_sizes is None:
            self.logger.warning("Skipping library size plot - no library_sizes.csv")
            return None

        lib = self.library_sizes.reindex(samples.index)['library_size'] / 1e6
        groups = samples[GROUP_COLUMN].astype(str)
        palette = dict(zip(groups.unique(), sns.color_palette("Set2", groups.nunique())))

        fig, ax = plt.subplots(figsize=self.config["figsize"]["library"])
        ax.bar(range(len(lib)), lib.values, color=[palette[g] for g in groups])
        ax.set_xticks(range(len(lib)))
        ax.set_xticklabels(lib.index, rotation=90, fontsize=8)
        ax.set_ylabel('Library size (millions)')
        ax.set_title('Library Sizes')

        from matplotlib.patches import Patch
        ax.legend(handles=[Patch(facecolor=c, label=g) for g, c in palette.items()],
                  loc='upper right', fontsize=8)

        return self._save_figure(fig, slug, "library_sizes")

    def _plot_pca(self, slug: str, vst: pd.DataFrame, samples: pd.DataFrame) -> Optional[List[str]]:
        """PCA of the most variable VST genes."""
        if vst.shape[1] < 3:
            self.logger.warning("Skipping PCA - fewer than 3 samples")
            return None

        n_top = min(self.config["pca_top_genes"], len(vst))
        top = vst.loc[vst.var(axis=1).sort_values(ascending=False).index[:n_top]]

        pca = PCA(n_components=2)
        coords = pca.fit_transform(top.T.values)

        plot_df = pd.DataFrame(coords, columns=['PC1', 'PC2'], index=top.columns)
        plot_df = plot_df.join(samples)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pca"])
        sns.scatterplot(
            data=plot_df, x='PC1', y='PC2',
            hue=self.config["genotype_column"], style=self.config["treatment_column"],
            s=120, alpha=0.85, ax=ax
        )

        for sample, row in plot_df.iterrows():
            ax.annotate(sample, (row['PC1'], row['PC2']), fontsize=7, ha='center', va='bottom')

        ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)')
        ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)')
        ax.set_title(f'PCA: top {n_top} variable genes (VST)')
        ax.axhline(y=0, color='gray', linestyle='--', alpha=0.3)
        ax.axvline(x=0, color='gray', linestyle='--', alpha=0.3)
        ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left', fontsize=8)

        return self._save_figure(fig, slug, "pca_plot")

    def _plot_sample_distances(self, slug: str, vst: pd.DataFrame, samples: pd.DataFrame) -> Optional[List[str]]:
        """Euclidean sample-to-sample distances on VST data, hierarchically ordered."""
        if vst.shape[1] < 2:
            return None

        dist = pdist(vst.T.values, metric='euclidean')
        order = leaves_list(linkage(dist, method='average'))
        matrix = pd.DataFrame(squareform(dist), index=vst.columns, columns=vst.columns)
        matrix = matrix.iloc[order, order]

        labels = [f"{s} ({samples.loc[s, GROUP_COLUMN]})" for s in matrix.index]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["distances"])
        sns.heatmap(matrix, cmap='Blues_r', ax=ax, xticklabels=labels, yticklabels=labels,
                    cbar_kws={'label': 'Euclidean distance'})
        ax.tick_params(labelsize=7)
        ax.set_title('Sample-to-sample Distances (VST)')
        plt.tight_layout()

        return self._save_figure(fig, slug, "sample_distances")

    def _plot_dispersions(self, slug: str, disp: pd.DataFrame) -> Optional[List[str]]:
        """Dispersion estimates against mean normalized counts."""
        disp = disp[disp['baseMean'] > 0]
        if disp.empty:
            return None

        fig, ax = plt.subplots(figsize=self.config["figsize"]["dispersion"])
        layers = [
            ('genewise_dispersions', 'Gene-wise', 'black', 4),
            ('dispersions', 'Final', '#3498DB', 4),
        ]
        for column, label, color, size in layers:
            if column in disp.columns:
                ax.scatter(disp['baseMean'], disp[column], s=size, alpha=0.5, c=color, label=label)

        if 'fitted_dispersions' in disp.columns:
            fitted = disp.sort_values('baseMean')
            ax.plot(fitted['baseMean'], fitted['fitted_dispersions'], color='#E74C3C', lw=2, label='Fitted')

        ax.set_xscale('log')
        ax.set_yscale('log')
        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('Dispersion')
        ax.set_title('Dispersion Estimates')
        ax.legend(loc='upper right')

        return self._save_figure(fig, slug, "dispersion_plot")

    # ------------------------------------------------------------------
    # Per-contrast results
    # ------------------------------------------------------------------

    def _plot_volcano(self, slug: str, contrast: str, res: pd.DataFrame) -> Optional[List[str]]:
        """Generate volcano plot."""
        df = res.dropna(subset=['padj', 'log2FC']).copy()
        if df.empty:
            self.logger.warning(f"Skipping volcano plot for {contrast} - no tested genes")
            return None

        df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))
        padj_cutoff = self.config["alpha"]
        log2fc_cutoff = self.config["log2fc_cutoff"]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["volcano"])

        labels = {'ns': 'Not Significant', 'up': 'Up', 'down': 'Down'}
        for direction, color in DIRECTION_COLORS.items():
            subset = df[df['direction'] == direction]
            ax.scatter(subset['log2FC'], subset['neg_log10_padj'],
                       c=color, alpha=0.6, s=12, label=labels[direction])

        # Add significance lines
        ax.axhline(y=-np.log10(padj_cutoff), color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)

        # Label top genes
        top_genes = df[df['direction'] != 'ns'].head(self.config["label_top_genes"])
        labels = self._gene_labels(top_genes['gene_id'].tolist())
        for _, row in top_genes.iterrows():
            ax.annotate(labels[row['gene_id']], (row['log2FC'], row['neg_log10_padj']),
                        fontsize=7, ha='center', va='bottom')

        ax.set_xlabel('log2 Fold Change')
        ax.set_ylabel('-log10 Adjusted P-value')
        ax.set_title(f'Volcano Plot: {contrast}')
        ax.legend(loc='upper right')

        n_up = (df['direction'] == 'up').sum()
        n_down = (df['direction'] == 'down').sum()
        ax.text(0.02, 0.98, f'Up: {n_up}\nDown: {n_down}',
                transform=ax.transAxes, verticalalignment='top',
                fontsize=10, bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        return self._save_figure(fig, slug, f"volcano_{contrast}", contrast)

    def _plot_ma(self, slug: str, contrast: str, res: pd.DataFrame) -> Optional[List[str]]:
        """MA plot: log2FC against mean normalized counts."""
        df = res.dropna(subset=['log2FC'])
        df = df[df['baseMean'] > 0]
        if df.empty:
            return None

        fig, ax = plt.subplots(figsize=self.config["figsize"]["ma"])
        for direction, color in DIRECTION_COLORS.items():
            subset = df[df['direction'] == direction]
            ax.scatter(subset['baseMean'], subset['log2FC'], c=color, s=8, alpha=0.6, label=direction)

        ax.set_xscale('log')
        ax.axhline(y=0, color='black', lw=0.8)
        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('log2 Fold Change')
        ax.set_title(f'MA Plot: {contrast}')
        ax.legend(loc='upper right')

        return self._save_figure(fig, slug, f"ma_{contrast}", contrast)

    def _plot_heatmap(
        self,
        slug: str,
        contrast_row: pd.Series,
        res: pd.DataFrame,
        vst: pd.DataFrame,
        samples: pd.DataFrame
    ) -> Optional[List[str]]:
        """Heatmap of the top significant genes across the two contrasted groups."""
        contrast = contrast_row['contrast']
        sig = res[res['direction'] != 'ns']
        if sig.empty:
            self.logger.warning(f"Skipping heatmap for {contrast} - no significant genes")
            return None

        n_genes = min(self.config["top_genes_heatmap"], len(sig))
        top_genes = [g for g in sig['gene_id'].astype(str).head(n_genes) if g in vst.index]

        groups = [contrast_row['denominator'], contrast_row['numerator']]
        in_contrast = samples[samples[GROUP_COLUMN].astype(str).isin(groups)].copy()
        in_contrast['_order'] = in_contrast[GROUP_COLUMN].astype(str).map({g: i for i, g in enumerate(groups)})
        ordered_samples = in_contrast.sort_values('_order').index

        expr_df = vst.loc[top_genes, ordered_samples]
        if expr_df.empty:
            return None

        # Z-score normalize
        std = expr_df.std(axis=1).replace(0, np.nan)
        expr_zscore = expr_df.sub(expr_df.mean(axis=1), axis=0).div(std, axis=0).fillna(0)
        expr_zscore = expr_zscore.rename(index=self._gene_labels(top_genes))

        fig, ax = plt.subplots(figsize=self.config["figsize"]["heatmap"])
        sns.heatmap(expr_zscore, cmap=self.config["color_palette"],
                    center=0, ax=ax, xticklabels=True,
                    yticklabels=True if len(top_genes) <= 50 else False,
                    cbar_kws={'label': 'Z-score'})

        ax.set_title(f'Top {len(top_genes)} DEGs: {contrast}')
        ax.set_xlabel('Samples')
        ax.set_ylabel('Genes')
        ax.tick_params(axis='y', labelsize=7)
        plt.tight_layout()

        return self._save_figure(fig, slug, f"heatmap_{contrast}", contrast)

    # ------------------------------------------------------------------

    def _safe(self, name: str, func, *args) -> bool:
        try:
            return bool(func(*args))
        except Exception as e:
            self.logger.error(f"Error generating {name}: {e}")
            plt.close('all')
            return False

    def _tissue_frames(self, row: pd.Series):
        slug = row['tissue_slug']
        samples = self.load_csv(row['samples_file'], index_col=0, dtype={GROUP_COLUMN: str})
        samples.index = samples.index.astype(str)
        vst = self.load_csv(f"vst_counts_{slug}.csv", required=False, index_col=0)
        disp = self.load_csv(f"dispersions_{slug}.csv", required=False, index_col=0)
        if vst is not None:
            vst.index = vst.index.astype(str)
            vst.columns = vst.columns.astype(str)
        return samples, vst, disp

    def run(self) -> Dict[str, Any]:
        """Generate all visualizations."""
        generated = 0
        failed_figures = []

        for _, row in self.datasets.iterrows():
            slug = row['tissue_slug']
            samples, vst, disp = self._tissue_frames(row)
            if vst is None:
                self.logger.warning(f"[{row['tissue']}] No VST counts (fit failed?) - skipping tissue figures")
                continue

            tissue_figures = [
                ("library_sizes", self._plot_library_sizes, (slug, samples)),
                ("pca_plot", self._plot_pca, (slug, vst, samples)),
                ("sample_distances", self._plot_sample_distances, (slug, vst, samples)),
            ]
            if disp is not None:
                tissue_figures.append(("dispersion_plot", self._plot_dispersions, (slug, disp)))

            ok_contrasts = self.contrasts[
                (self.contrasts['tissue_slug'] == slug) & (self.contrasts['status'] == 'ok')
            ]
            for _, contrast_row in ok_contrasts.iterrows():
                res = self.load_csv(contrast_row['results_file'])
                res['gene_id'] = res['gene_id'].astype(str)
                contrast = contrast_row['contrast']
                tissue_figures.extend([
                    (f"volcano_{contrast}", self._plot_volcano, (slug, contrast, res)),
                    (f"ma_{contrast}", self._plot_ma, (slug, contrast, res)),
                    (f"heatmap_{contrast}", self._plot_heatmap, (slug, contrast_row, res, vst, samples)),
                ])

            for name, func, args in tissue_figures:
                if self._safe(f"{slug}/{name}", func, *args):
                    generated += 1
                else:
                    failed_figures.append(f"{slug}/{name}")

        figures_df = pd.DataFrame(self.figure_rows, columns=['tissue_slug', 'contrast', 'figure', 'file'])
        self.save_csv(figures_df, "figures.csv")

        self.logger.info(f"Visualization Complete:")
        self.logger.info(f"  Generated: {generated} figures ({len(figures_df)} files)")
        self.logger.info(f"  Failed/Skipped: {len(failed_figures)}")

        return {
            "figures_generated": generated,
            "files_written": len(figures_df),
            "failed_figures": failed_figures,
        }

    def validate_outputs(self) -> bool:
        """Validate visualization outputs."""
        if not self.figures_dir.exists():
            self.logger.error("Figures directory not created")
            return False

        if not list(self.figures_dir.rglob("*.png")):
            self.logger.warning("No PNG figures generated")
            # Still valid if input data was limited

        return True
