"""
Tissue RNA-seq - Test Configuration and Fixtures
"""
import importlib.util
import shutil
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from tissue_rnaseq.backends.base import DEBackend
from tissue_rnaseq.config import load_config
from tissue_rnaseq.utils.design import GROUP_COLUMN

N_GENES = 60
TISSUES = ["liver", "muscle"]
GENOTYPES = ["WT", "KO"]
TREATMENTS = ["ctrl", "treated"]
N_REPLICATES = 3

# Genes 0-11 are up in KO, genes 12-23 are down with treatment
KO_UP = [f"Gene{i}" for i in range(12)]
TREATED_DOWN = [f"Gene{i}" for i in range(12, 24)]

# Local gene sets served by the fake Enrichr
TEST_GENE_SETS = {
    "KO response A": [f"Gene{i}" for i in range(10)],
    "KO response B": [f"Gene{i}" for i in range(9)] + ["Gene40"],
    "Treatment response": TREATED_DOWN,
    "Unrelated": [f"Gene{i}" for i in range(40, 50)],
}


def make_metadata() -> pd.DataFrame:
    rows = []
    for tissue in TISSUES:
        for genotype in GENOTYPES:
            for treatment in TREATMENTS:
                for rep in range(N_REPLICATES):
                    rows.append({
                        "sample_id": f"{tissue}_{genotype}_{treatment}_{rep + 1}",
                        "genotype": genotype,
                        "treatment": treatment,
                        "tissue": tissue,
                        "cohort": f"c{rep % 2 + 1}",
                    })
    return pd.DataFrame(rows)


def make_counts(metadata: pd.DataFrame, seed: int = 42) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    baseline = rng.uniform(200, 800, size=N_GENES)

    counts = np.zeros((N_GENES, len(metadata)), dtype=np.int64)
    for j, sample in metadata.iterrows():
        mu = baseline.copy()
        if sample["genotype"] == "KO":
            mu[:12] *= 8.0
        if sample["treatment"] == "treated":
            mu[12:24] *= 0.1
        n = 100.0  # dispersion 0.01
        counts[:, j] = rng.negative_binomial(n, n / (n + mu))

    df = pd.DataFrame(counts, index=[f"Gene{i}" for i in range(N_GENES)], columns=metadata["sample_id"])
    df.index.name = "gene_id"
    df.columns.name = None
    return df


@pytest.fixture
def sample_metadata():
    """Two tissues x 2 genotypes x 2 treatments x 3 replicates."""
    return make_metadata()


@pytest.fixture
def sample_count_matrix(sample_metadata):
    """Synthetic genes x samples count matrix matching sample_metadata."""
    return make_counts(sample_metadata)


@pytest.fixture
def input_dir(tmp_path, sample_count_matrix, sample_metadata):
    """Directory holding count_matrix.csv and metadata.csv."""
    data_dir = tmp_path / "input"
    data_dir.mkdir()
    sample_count_matrix.to_csv(data_dir / "count_matrix.csv")
    sample_metadata.to_csv(data_dir / "metadata.csv", index=False)
    return data_dir


@pytest.fixture
def work_dir(tmp_path):
    """Shared input/output directory for chained agents."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def agent_config(tmp_path, monkeypatch):
    """Pipeline config with test-friendly figure settings and a private id cache."""
    for key in ("DE_BACKEND", "ORGANISM", "N_JOBS", "N_CPUS", "ALPHA", "LOG2FC_CUTOFF"):
        monkeypatch.delenv(f"TISSUE_RNASEQ_{key}", raising=False)
    return load_config(overrides={
        "reference_genotype": "WT",
        "reference_treatment": "ctrl",
        "figure_format": ["png"],
        "dpi": 40,
        "gene_id_cache_dir": str(tmp_path / "id_cache"),
    })


class FakeBackend(DEBackend):
    """Deterministic stand-in for DESeq2: t-test on log2 normalized counts, BH-adjusted by scipy."""

    name = "fake"

    def fit(self, counts, samples, design):
        self.design = design
        self.counts = counts.astype(float)
        self.samples = samples.loc[counts.columns]
        self.gene_ids = counts.index
        self.sample_ids = counts.columns

        log_counts = np.log(self.counts.replace(0, np.nan))
        log_geo_means = log_counts.mean(axis=1)
        usable = log_geo_means.notna()
        self._size_factors = np.exp(
            log_counts[usable].sub(log_geo_means[usable], axis=0).median(axis=0)
        )

    def normalized_counts(self):
        return self.counts / self._size_factors

    def vst_counts(self):
        return np.log2(self.normalized_counts() + 1)

    def size_factors(self):
        return pd.Series(self._size_factors.to_numpy(), index=self.sample_ids, name="size_factor")

    def dispersions(self):
        norm = self.normalized_counts()
        mean = norm.mean(axis=1)
        genewise = ((norm.var(axis=1) - mean) / mean.pow(2)).clip(lower=1e-8)
        disp = pd.DataFrame({
            "baseMean": mean,
            "genewise_dispersions": genewise,
            "fitted_dispersions": genewise.median(),
            "dispersions": genewise,
        })
        disp.index.name = "gene_id"
        return disp

    def _raw_contrast(self, numerator, denominator):
        groups = self.samples[GROUP_COLUMN].astype(str)
        for level in (numerator, denominator):
            if level not in set(groups):
                raise ValueError(f"Unknown level {level}")

        log_norm = self.vst_counts()
        num = log_norm.loc[:, (groups == numerator).to_numpy()]
        den = log_norm.loc[:, (groups == denominator).to_numpy()]
        stat, pvalue = stats.ttest_ind(num, den, axis=1)
        lfc = num.mean(axis=1) - den.mean(axis=1)

        return pd.DataFrame({
            "baseMean": self.normalized_counts().mean(axis=1),
            "log2FoldChange": lfc,
            "lfcSE": (lfc / stat).abs(),
            "stat": stat,
            "pvalue": pvalue,
            "padj": stats.false_discovery_control(np.nan_to_num(pvalue, nan=1.0), method="bh"),
        }, index=self.gene_ids)


@pytest.fixture
def fake_backend(monkeypatch):
    """Route the DEG agent to FakeBackend."""
    monkeypatch.setattr(
        "tissue_rnaseq.agents.agent3_deg.get_backend",
        lambda name, config: FakeBackend(alpha=config["alpha"])
    )
    return FakeBackend


def _fake_enrichr_results(gene_list, gene_sets):
    if not isinstance(gene_sets, dict):
        gene_sets = TEST_GENE_SETS

    query = {g.upper() for g in gene_list}
    rows = []
    for term, members in gene_sets.items():
        hits = sorted(g for g in members if g.upper() in query)
        if not hits:
            continue
        pvalue = 10.0 ** (-len(hits))
        rows.append({
            "Gene_set": "test_library",
            "Term": term,
            "Overlap": f"{len(hits)}/{len(members)}",
            "P-value": pvalue,
            "Adjusted P-value": min(pvalue * len(gene_sets), 1.0),
            "Odds Ratio": float(len(hits)),
            "Combined Score": float(len(hits)) * 10,
            "Genes": ";".join(hits),
        })
    columns = ["Gene_set", "Term", "Overlap", "P-value", "Adjusted P-value",
               "Odds Ratio", "Combined Score", "Genes"]
    return pd.DataFrame(rows, columns=columns)


@pytest.fixture
def fake_enrichr(monkeypatch):
    """Replace gseapy.enrichr with an offline overlap test; records every call."""
    calls = []

    def enrichr(gene_list, gene_sets, organism=None, background=None, outdir=None,
                cutoff=0.05, no_plot=True, **kwargs):
        calls.append({
            "gene_list": list(gene_list),
            "gene_sets": gene_sets,
            "organism": organism,
            "background": background,
        })
        return SimpleNamespace(results=_fake_enrichr_results(gene_list, gene_sets))

    monkeypatch.setattr("gseapy.enrichr", enrichr)
    return calls


def run_upstream(input_dir: Path, work_dir: Path, config: dict, until: str = "agent3_deg") -> None:
    """Run agents 1..``until`` with input_dir -> work_dir chaining."""
    from tissue_rnaseq.agents import DatasetAgent, DEGAgent, LoadAgent

    LoadAgent(input_dir, work_dir, config).execute()
    if until == "agent1_load":
        return
    DatasetAgent(work_dir, work_dir, config).execute()
    if until == "agent2_dataset":
        return
    DEGAgent(work_dir, work_dir, config).execute()


# Skip markers for tests requiring specific resources
requires_r = pytest.mark.skipif(
    shutil.which("R") is None or importlib.util.find_spec("rpy2") is None,
    reason="R or rpy2 not installed"
)
