"""
Base interface for differential expression backends.

A backend fits one DESeq2 model per grouped dataset (one tissue) and then
serves any number of contrasts from that fit.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Standardized contrast result columns
RESULT_COLUMNS = ['gene_id', 'baseMean', 'log2FC', 'lfcSE', 'stat', 'pvalue', 'padj']

COLUMN_MAPPING = {
    'baseMean': 'baseMean',
    'log2FoldChange': 'log2FC',
    'lfcSE': 'lfcSE',
    'stat': 'stat',
    'pvalue': 'pvalue',
    'padj': 'padj'
}


class DEBackend(ABC):
    """Backend interface. ``counts`` are genes x samples throughout."""

    name: str = "base"

    def __init__(
        self,
        alpha: float = 0.05,
        n_cpus: int = 1,
        shrink_lfc: bool = False,
        refit_cooks: bool = True
    ):
        self.alpha = alpha
        self.n_cpus = n_cpus
        self.shrink_lfc = shrink_lfc
        self.refit_cooks = refit_cooks
        self.gene_ids: Optional[pd.Index] = None
        self.sample_ids: Optional[pd.Index] = None

    @abstractmethod
    def fit(self, counts: pd.DataFrame, samples: pd.DataFrame, design: str) -> None:
        """Estimate size factors, dispersions and the GLM for ``design``."""

    @abstractmethod
    def _raw_contrast(self, numerator: str, denominator: str) -> pd.DataFrame:
        """Backend-native result table indexed by gene id."""

    @abstractmethod
    def normalized_counts(self) -> pd.DataFrame:
        """Size-factor normalized counts (genes x samples)."""

    @abstractmethod
    def vst_counts(self) -> pd.DataFrame:
        """Variance-stabilized expression (genes x samples)."""

    @abstractmethod
    def size_factors(self) -> pd.Series:
        """Per-sample size factors."""

    @abstractmethod
    def dispersions(self) -> pd.DataFrame:
        """Per-gene dispersion estimates (genewise, fitted, final)."""

    def contrast(self, numerator: str, denominator: str) -> pd.DataFrame:
        """Standardized result table for ``numerator`` vs ``denominator``."""
        results_df = self._raw_contrast(numerator, denominator)
        return standardize_results(results_df)


def standardize_results(results_df: pd.DataFrame) -> pd.DataFrame:
    """Rename DESeq2 columns and return them in a fixed order with ``gene_id`` first."""
    results_df = results_df.rename(columns=COLUMN_MAPPING)

    # LFC shrinkage drops the Wald statistic
    if 'stat' not in results_df.columns:
        results_df['stat'] = results_df['log2FC'] / results_df['lfcSE'].replace(0, np.nan)

    results_df = results_df.copy()
    results_df.index.name = 'gene_id'
    results_df = results_df.reset_index()

    return results_df[RESULT_COLUMNS]
