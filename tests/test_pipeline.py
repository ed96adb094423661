"""
Tissue RNA-seq - Orchestrator and CLI Tests
"""
import json

import pandas as pd
import pytest

from tissue_rnaseq import TissueRNAseqPipeline, create_sample_data
from tissue_rnaseq.cli import main


@pytest.fixture
def pipeline_config(agent_config):
    return {
        "reference_genotype": "WT",
        "reference_treatment": "ctrl",
        "figure_format": ["png"],
        "dpi": 40,
        "gene_id_cache_dir": agent_config["gene_id_cache_dir"],
    }


class TestPipelineOrchestrator:
    """Test cases for TissueRNAseqPipeline."""

    def test_full_run(self, input_dir, tmp_path, pipeline_config, fake_backend, fake_enrichr):
        pipeline = TissueRNAseqPipeline(input_dir, tmp_path / "results", pipeline_config)
        state = pipeline.run()

        assert state["completed_agents"] == TissueRNAseqPipeline.AGENT_ORDER
        assert state["failed_agents"] == []
        assert pipeline.succeeded

        run_dir = pipeline.run_dir
        assert run_dir.parent == tmp_path / "results"
        assert (run_dir / "pipeline.log").exists()

        summary = json.loads((run_dir / "pipeline_summary.json").read_text())
        assert summary["completed_agents"] == TissueRNAseqPipeline.AGENT_ORDER
        assert summary["agent_results"]["agent2_dataset"]["tissues_ok"] == 2

        accumulated = run_dir / "accumulated"
        for filename in ["counts.csv", "datasets.csv", "contrasts.csv", "enrichment_summary.csv",
                         "all_contrasts_long.csv", "results_manifest.json"]:
            assert (accumulated / filename).exists()
        assert (accumulated / "figures" / "liver" / "pca_plot.png").exists()
        assert (accumulated / "figures" / "enrichment").is_dir()

        assert [r.success for r in pipeline.agent_results] == [True] * 6

    def test_stop_after(self, input_dir, tmp_path, pipeline_config, fake_backend):
        pipeline = TissueRNAseqPipeline(input_dir, tmp_path / "results", pipeline_config)
        state = pipeline.run(stop_after="agent3_deg")

        assert state["completed_agents"] == ["agent1_load", "agent2_dataset", "agent3_deg"]
        assert not (pipeline.run_dir / "agent4_visualization").exists()

    def test_stops_at_first_failure(self, input_dir, tmp_path, pipeline_config, sample_metadata, fake_backend):
        sample_metadata.drop(columns=["genotype"]).to_csv(input_dir / "metadata.csv", index=False)

        pipeline = TissueRNAseqPipeline(input_dir, tmp_path / "results", pipeline_config)
        state = pipeline.run()

        assert state["completed_agents"] == []
        assert state["failed_agents"] == ["agent1_load"]
        assert "agent1_load" in state["errors"]
        assert not pipeline.succeeded
        assert (pipeline.run_dir / "agent1_load" / "meta_agent1_load.json").exists()

    def test_resume_from_agent(self, input_dir, tmp_path, pipeline_config, fake_backend, fake_enrichr):
        """run_from on a reused run directory continues from existing outputs."""
        first = TissueRNAseqPipeline(input_dir, tmp_path / "results", pipeline_config)
        first.run(stop_after="agent3_deg")

        resumed = TissueRNAseqPipeline(
            input_dir, tmp_path / "results", {**pipeline_config, "ontologies": ["MF"]},
            run_dir=first.run_dir
        )
        state = resumed.run_from("agent5_enrichment")

        assert state["completed_agents"] == ["agent5_enrichment", "agent6_export"]
        summary = pd.read_csv(first.run_dir / "accumulated" / "enrichment_summary.csv")
        assert set(summary["ontology"]) == {"MF"}

    def test_run_agent_needs_upstream_outputs(self, input_dir, tmp_path, pipeline_config):
        pipeline = TissueRNAseqPipeline(input_dir, tmp_path / "results", pipeline_config)
        with pytest.raises(FileNotFoundError, match="run the earlier agents first"):
            pipeline.run_agent("agent3_deg")

    def test_unknown_agent(self, input_dir, tmp_path, pipeline_config):
        pipeline = TissueRNAseqPipeline(input_dir, tmp_path / "results", pipeline_config)
        with pytest.raises(ValueError):
            pipeline.run_agent("agent9_report")
        with pytest.raises(ValueError):
            pipeline.run(stop_after="agent9_report")


class TestSampleData:
    """Test cases for the synthetic data generator."""

    def test_create_sample_data(self, tmp_path):
        create_sample_data(tmp_path, n_genes=200, n_replicates=3)

        counts = pd.read_csv(tmp_path / "count_matrix.csv", index_col=0)
        metadata = pd.read_csv(tmp_path / "metadata.csv")

        assert counts.shape == (200, 24)
        assert list(counts.columns) == list(metadata["sample_id"])
        assert set(metadata["tissue"]) == {"liver", "muscle"}
        assert metadata.groupby(["tissue", "genotype", "treatment"]).size().eq(3).all()
        assert (counts.to_numpy() >= 0).all()

        config = json.loads((tmp_path / "config.json").read_text())
        assert config["reference_genotype"] == "WT"


class TestCLI:
    """Test cases for the tissue-rnaseq command."""

    def test_create_sample(self, tmp_path):
        assert main(["--create-sample", "-i", str(tmp_path / "data")]) == 0
        assert (tmp_path / "data" / "count_matrix.csv").exists()

    def test_requires_output(self, input_dir):
        assert main(["-i", str(input_dir)]) == 1

    def test_full_run(self, input_dir, tmp_path, pipeline_config, fake_backend, fake_enrichr):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(pipeline_config))

        code = main([
            "-i", str(input_dir), "-o", str(tmp_path / "out"), "-c", str(config_path),
            "--tissues", "liver", "--ontology", "BP", "MF", "--n-jobs", "1",
        ])

        assert code == 0
        run_dir = next((tmp_path / "out").glob("run_*"))
        datasets = pd.read_csv(run_dir / "accumulated" / "datasets.csv")
        assert list(datasets["tissue"]) == ["liver"]
        summary = pd.read_csv(run_dir / "accumulated" / "enrichment_summary.csv")
        assert set(summary["ontology"]) == {"BP", "MF"}

    def test_input_config_picked_up(self, input_dir, tmp_path, pipeline_config):
        """config.json in the input directory is used when --config is not given."""
        (input_dir / "config.json").write_text(json.dumps({**pipeline_config, "tissues": ["muscle"]}))

        code = main(["-i", str(input_dir), "-o", str(tmp_path / "out"), "--stop-after", "agent2_dataset"])

        assert code == 0
        run_dir = next((tmp_path / "out").glob("run_*"))
        datasets = pd.read_csv(run_dir / "accumulated" / "datasets.csv")
        assert list(datasets["tissue"]) == ["muscle"]

    def test_failure_exit_code(self, input_dir, tmp_path, pipeline_config, fake_backend):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(pipeline_config))

        code = main(["-i", str(input_dir), "-o", str(tmp_path / "out"), "-c", str(config_path),
                     "--tissues", "brain"])
        assert code == 1

    def test_invalid_choice(self, input_dir, tmp_path):
        with pytest.raises(SystemExit):
            main(["-i", str(input_dir), "-o", str(tmp_path), "--backend", "edger"])
