"""
Tissue RNA-seq - Agent 4 (Visualization) and Agent 6 (Export) Tests
"""
import json

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from tissue_rnaseq.agents import EnrichmentAgent, ExportAgent, VisualizationAgent
from tissue_rnaseq.agents.agent6_export import to_wide
from tissue_rnaseq.utils.gene_ids import GeneIdMapper

from conftest import KO_UP, run_upstream


@pytest.fixture
def deg_dir(input_dir, work_dir, agent_config, fake_backend):
    run_upstream(input_dir, work_dir, agent_config)
    return work_dir


class TestAgent4Visualization:
    """Test cases for Agent 4 - Visualization."""

    def test_figures_written(self, deg_dir, agent_config):
        results = VisualizationAgent(deg_dir, deg_dir, agent_config).execute()

        assert results["failed_figures"] == []
        figures = pd.read_csv(deg_dir / "figures.csv")

        liver = figures[figures["tissue_slug"] == "liver"]
        for name in ["library_sizes", "pca_plot", "sample_distances", "dispersion_plot"]:
            assert name in set(liver["figure"])
        for prefix in ["volcano", "ma", "heatmap"]:
            assert f"{prefix}_KO.ctrl_vs_WT.ctrl" in set(liver["figure"])

        for path in figures["file"]:
            assert (deg_dir / path).exists()
        assert (deg_dir / "figures" / "liver" / "pca_plot.png").exists()

    def test_multiple_formats(self, deg_dir, agent_config):
        config = {**agent_config, "figure_format": ["png", "svg"]}
        VisualizationAgent(deg_dir, deg_dir, config).execute()

        assert (deg_dir / "figures" / "muscle" / "volcano_KO.ctrl_vs_WT.ctrl.svg").exists()
        assert (deg_dir / "figures" / "muscle" / "volcano_KO.ctrl_vs_WT.ctrl.png").exists()

    def test_figure_failure_does_not_stop_others(self, deg_dir, agent_config, monkeypatch):
        def broken(self, *args):
            raise RuntimeError("no display")

        monkeypatch.setattr(VisualizationAgent, "_plot_pca", broken)
        results = VisualizationAgent(deg_dir, deg_dir, agent_config).execute()

        assert "liver/pca_plot" in results["failed_figures"]
        assert (deg_dir / "figures" / "liver" / "volcano_KO.ctrl_vs_WT.ctrl.png").exists()

    def test_failed_figure_is_closed(self, deg_dir, agent_config, monkeypatch):
        def half_drawn(self, *args):
            plt.subplots()
            raise RuntimeError("bad data")

        plt.close("all")
        monkeypatch.setattr(VisualizationAgent, "_plot_sample_distances", half_drawn)
        VisualizationAgent(deg_dir, deg_dir, agent_config).execute()

        assert plt.get_fignums() == []

    def test_volcano_labels_use_symbols(self, deg_dir, agent_config, monkeypatch):
        labelled = {}
        save_figure = VisualizationAgent._save_figure

        def record_labels(self, fig, tissue_slug, name, contrast=""):
            if name.startswith("volcano_"):
                labelled[(tissue_slug, name)] = {t.get_text() for t in fig.axes[0].texts}
            return save_figure(self, fig, tissue_slug, name, contrast)

        monkeypatch.setattr(VisualizationAgent, "_save_figure", record_labels)
        monkeypatch.setattr(
            VisualizationAgent, "_gene_labels",
            lambda self, gene_ids: {g: g.replace("Gene", "Sym") for g in gene_ids}
        )
        VisualizationAgent(deg_dir, deg_dir, agent_config).execute()

        gene_labels = {t for t in labelled[("liver", "volcano_KO.ctrl_vs_WT.ctrl")] if not t.startswith("Up:")}
        assert len(gene_labels) == 10
        assert all(t.startswith("Sym") for t in gene_labels)


class TestGeneLabels:
    """Test cases for symbol labels on figures."""

    def test_ensembl_ids_mapped(self, deg_dir, agent_config, monkeypatch):
        monkeypatch.setattr(
            GeneIdMapper, "to_symbols",
            lambda self, ids: {g: ("Actb" if g.startswith("ENSMUSG00000029580") else None) for g in ids}
        )
        agent = VisualizationAgent(deg_dir, deg_dir, agent_config)

        labels = agent._gene_labels(["ENSMUSG00000029580.3", "ENSMUSG00000000001"])

        assert labels == {"ENSMUSG00000029580.3": "Actb", "ENSMUSG00000000001": "ENSMUSG00000000001"}

    def test_lookup_failure_keeps_ids(self, deg_dir, agent_config, monkeypatch):
        def offline(self, ids):
            raise ConnectionError("mygene unreachable")

        monkeypatch.setattr(GeneIdMapper, "to_symbols", offline)
        agent = VisualizationAgent(deg_dir, deg_dir, agent_config)

        assert agent._gene_labels(["ENSMUSG00000029580"]) == {"ENSMUSG00000029580": "ENSMUSG00000029580"}

    def test_symbols_not_queried(self, deg_dir, agent_config, monkeypatch):
        def fail(self, ids):
            raise AssertionError("should not query")

        monkeypatch.setattr(GeneIdMapper, "to_symbols", fail)
        agent = VisualizationAgent(deg_dir, deg_dir, agent_config)

        assert agent._gene_labels(["Gene1"]) == {"Gene1": "Gene1"}
        assert agent.mapper is None


class TestAgent6Export:
    """Test cases for Agent 6 - Export."""

    def test_to_wide(self):
        long_df = pd.DataFrame({
            "gene_id": ["g1", "g2", "g1", "g2"],
            "contrast": ["b_vs_a", "b_vs_a", "c_vs_a", "c_vs_a"],
            "log2FC": [1.0, -1.0, 2.0, np.nan],
            "padj": [0.01, 0.5, 0.001, np.nan],
        })

        wide = to_wide(long_df).set_index("gene_id")

        assert list(wide.columns) == ["log2FC__b_vs_a", "padj__b_vs_a", "log2FC__c_vs_a", "padj__c_vs_a"]
        assert wide.loc["g1", "log2FC__c_vs_a"] == 2.0
        assert np.isnan(wide.loc["g2", "padj__c_vs_a"])

    def test_exports(self, deg_dir, agent_config, fake_enrichr):
        EnrichmentAgent(deg_dir, deg_dir, agent_config).execute()
        results = ExportAgent(deg_dir, deg_dir, agent_config).execute()

        long_df = pd.read_csv(deg_dir / "all_contrasts_long.csv")
        assert len(long_df) == 12 * 60
        assert list(long_df.columns[:5]) == ["tissue", "contrast", "numerator", "denominator", "gene_id"]

        significant = pd.read_csv(deg_dir / "significant_genes.csv")
        assert (significant["direction"] != "ns").all()
        assert results["significant_rows"] == len(significant)

        wide = pd.read_csv(deg_dir / "wide_liver.csv")
        assert len(wide) == 60
        assert "log2FC__KO.ctrl_vs_WT.ctrl" in wide.columns
        assert len([c for c in wide.columns if c.startswith("padj__")]) == 6

        summary = pd.read_csv(deg_dir / "deg_summary.csv").set_index(["tissue", "contrast"])
        assert summary.loc[("liver", "KO.ctrl_vs_WT.ctrl"), "n_up"] == len(KO_UP)
        assert summary.loc[("liver", "KO.ctrl_vs_WT.ctrl"), "n_tested"] == 60

        enrichment = pd.read_csv(deg_dir / "enrichment_long.csv")
        assert set(enrichment["tissue"]) == {"liver", "muscle"}

        manifest = json.loads((deg_dir / "results_manifest.json").read_text())
        files = {entry["file"]: entry["rows"] for entry in manifest["files"]}
        assert files["all_contrasts_long.csv"] == 720
        assert {"wide_liver.csv", "wide_muscle.csv", "deg_summary.csv", "enrichment_long.csv"} <= set(files)

    def test_export_without_enrichment(self, deg_dir, agent_config):
        results = ExportAgent(deg_dir, deg_dir, agent_config).execute()

        assert results["enrichment_rows"] == 0
        assert (deg_dir / "enrichment_long.csv").exists()

    def test_failed_contrasts_in_summary(self, deg_dir, agent_config):
        """Failed contrasts appear in deg_summary with zero counts."""
        contrasts = pd.read_csv(deg_dir / "contrasts.csv")
        contrasts.loc[0, ["status", "results_file"]] = ["failed", np.nan]
        contrasts.to_csv(deg_dir / "contrasts.csv", index=False)

        ExportAgent(deg_dir, deg_dir, agent_config).execute()

        summary = pd.read_csv(deg_dir / "deg_summary.csv")
        assert summary.loc[0, "status"] == "failed"
        assert summary.loc[0, "n_significant"] == 0
        long_df = pd.read_csv(deg_dir / "all_contrasts_long.csv")
        assert len(long_df) == 11 * 60
