"""
PyDESeq2 backend (default).

DESeq2 reimplemented in Python: median-of-ratios size factors, dispersion
shrinkage, negative binomial GLM and Wald tests with Cook's distance outlier
refitting and independent filtering.
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from ..utils.design import GROUP_COLUMN
from ..utils.exceptions import BackendError
from .base import DEBackend

logger = logging.getLogger(__name__)


class PyDESeq2Backend(DEBackend):
    """DESeq2 via PyDESeq2."""

    name = "pydeseq2"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.inference = DefaultInference(n_cpus=self.n_cpus)
        self.dds: Optional[DeseqDataSet] = None
        self.design: Optional[str] = None
        self.reference_level: Optional[str] = None

    def _design_columns(self, samples: pd.DataFrame) -> List[str]:
        terms = [t.strip() for t in self.design.replace("~", "").split("+")]
        return [t for t in terms if t in samples.columns]

    def fit(self, counts: pd.DataFrame, samples: pd.DataFrame, design: str) -> None:
        self.design = design
        self.gene_ids = counts.index
        self.sample_ids = counts.columns

        # PyDESeq2 expects (samples x genes) integer counts
        counts_t = counts.T.astype(int)
        metadata = samples.loc[counts_t.index, self._design_columns(samples)].copy()
        for col in metadata.columns:
            if not isinstance(metadata[col].dtype, pd.CategoricalDtype):
                metadata[col] = metadata[col].astype(str)

        group = metadata[GROUP_COLUMN]
        if isinstance(group.dtype, pd.CategoricalDtype):
            self.reference_level = str(group.cat.categories[0])
        else:
            self.reference_level = sorted(group.unique())[0]

        logger.info(f"Fitting PyDESeq2: {counts_t.shape[1]} genes x {counts_t.shape[0]} samples, design '{design}'")
        try:
            self.dds = DeseqDataSet(
                counts=counts_t,
                metadata=metadata,
                design=design,
                refit_cooks=self.refit_cooks,
                inference=self.inference,
                quiet=True,
            )
            self.dds.deseq2()
        except Exception as e:
            raise BackendError(f"PyDESeq2 fit failed: {e}") from e

    def _require_fit(self) -> DeseqDataSet:
        if self.dds is None:
            raise BackendError("Backend has not been fitted")
        return self.dds

    def _shrink_coefficient(self, numerator: str, denominator: str) -> Optional[str]:
        """Design-matrix column for ``numerator`` vs the reference level.

        Only a contrast against the reference level is a single coefficient;
        any other contrast gets None.
        """
        dds = self._require_fit()
        if denominator != self.reference_level:
            return None
        columns = list(dds.obsm["design_matrix"].columns)
        candidates = [
            f"{GROUP_COLUMN}[T.{numerator}]",
            f"{GROUP_COLUMN}_{numerator}_vs_{denominator}",
        ]
        for name in candidates:
            if name in columns:
                return name
        return None

    def _raw_contrast(self, numerator: str, denominator: str) -> pd.DataFrame:
        dds = self._require_fit()
        try:
            stat_res = DeseqStats(
                dds,
                contrast=[GROUP_COLUMN, numerator, denominator],
                alpha=self.alpha,
                cooks_filter=True,
                independent_filter=True,
                inference=self.inference,
                quiet=True,
            )
            stat_res.summary()
        except Exception as e:
            raise BackendError(f"PyDESeq2 contrast {numerator} vs {denominator} failed: {e}") from e

        if self.shrink_lfc:
            coeff = self._shrink_coefficient(numerator, denominator)
            if coeff:
                try:
                    logger.info(f"Applying LFC shrinkage ({coeff})...")
                    stat_res.lfc_shrink(coeff=coeff)
                except Exception as e:
                    logger.warning(f"LFC shrinkage failed: {e}. Using unshrunk LFC.")
            else:
                logger.warning(
                    f"No coefficient for {numerator} vs {denominator} "
                    f"(denominator is not the reference level); using unshrunk LFC"
                )

        results_df = stat_res.results_df.copy()
        results_df.index = results_df.index.astype(str)
        return results_df

    def normalized_counts(self) -> pd.DataFrame:
        dds = self._require_fit()
        normed = pd.DataFrame(
            np.asarray(dds.layers["normed_counts"]),
            index=dds.obs_names,
            columns=dds.var_names
        )
        return normed.T

    def vst_counts(self) -> pd.DataFrame:
        dds = self._require_fit()
        try:
            dds.vst(use_design=False)
            values = np.asarray(dds.layers["vst_counts"])
        except Exception as e:
            logger.warning(f"VST failed ({e}); using log2(normalized counts + 1)")
            return np.log2(self.normalized_counts() + 1)
        return pd.DataFrame(values, index=dds.obs_names, columns=dds.var_names).T

    def size_factors(self) -> pd.Series:
        dds = self._require_fit()
        if "size_factors" in dds.obs.columns:
            values = dds.obs["size_factors"].to_numpy()
        else:
            values = np.asarray(dds.obsm["size_factors"])
        return pd.Series(values, index=dds.obs_names, name="size_factor")

    def dispersions(self) -> pd.DataFrame:
        dds = self._require_fit()
        disp = pd.DataFrame(index=dds.var_names)
        disp["baseMean"] = self.normalized_counts().mean(axis=1).reindex(disp.index).to_numpy()
        for key in ("genewise_dispersions", "fitted_dispersions", "MAP_dispersions", "dispersions"):
            if key in dds.var.columns:
                disp[key] = dds.var[key].to_numpy()
        disp.index.name = "gene_id"
        return disp
