"""
R DESeq2 backend via rpy2.

Requires R with the DESeq2, BiocGenerics and SummarizedExperiment packages
and the ``r`` extra (rpy2).
"""

import logging

import numpy as np
import pandas as pd

from ..utils.design import GROUP_COLUMN
from ..utils.exceptions import BackendError
from .base import DEBackend

# rpy2 imports
try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.packages import importr
    from rpy2.robjects.conversion import localconverter
    HAS_RPY2 = True
except ImportError:
    HAS_RPY2 = False

logger = logging.getLogger(__name__)


class RDESeq2Backend(DEBackend):
    """DESeq2 via rpy2."""

    name = "deseq2_r"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if not HAS_RPY2:
            raise BackendError("rpy2 not installed. Install with: pip install 'tissue-rnaseq[r]'")
        self.dds = None
        self._vsd = None

        try:
            self.base = importr('base')
            self.deseq2 = importr('DESeq2')
            self.bioc_generics = importr('BiocGenerics')
            self.summarized_experiment = importr('SummarizedExperiment')
        except Exception as e:
            raise BackendError(f"R packages unavailable: {e}") from e

    def _to_pandas(self, r_matrix, index, columns) -> pd.DataFrame:
        with localconverter(ro.default_converter + pandas2ri.converter):
            df = ro.conversion.rpy2py(self.base.as_data_frame(r_matrix))
        df = pd.DataFrame(np.asarray(df, dtype=float), index=index, columns=columns)
        return df

    def fit(self, counts: pd.DataFrame, samples: pd.DataFrame, design: str) -> None:
        self.gene_ids = counts.index.astype(str)
        self.sample_ids = counts.columns.astype(str)

        terms = [t.strip() for t in design.replace("~", "").split("+")]
        meta_df = samples.loc[counts.columns, [t for t in terms if t in samples.columns]].copy()
        for col in meta_df.columns:
            if not isinstance(meta_df[col].dtype, pd.CategoricalDtype):
                meta_df[col] = pd.Categorical(meta_df[col].astype(str))

        logger.info("Converting to R objects...")
        with localconverter(ro.default_converter + pandas2ri.converter):
            counts_r = ro.conversion.py2rpy(counts.astype(int))
            meta_r = ro.conversion.py2rpy(meta_df)

        try:
            logger.info(f"Creating DESeqDataSet with design {design}...")
            dds = self.deseq2.DESeqDataSetFromMatrix(
                countData=self.base.as_matrix(counts_r),
                colData=meta_r,
                design=ro.Formula(design)
            )
            logger.info("Running DESeq2 (this may take a while)...")
            self.dds = self.deseq2.DESeq(dds, quiet=True)
        except Exception as e:
            raise BackendError(f"DESeq2 fit failed: {e}") from e

    def _require_fit(self):
        if self.dds is None:
            raise BackendError("Backend has not been fitted")
        return self.dds

    def _raw_contrast(self, numerator: str, denominator: str) -> pd.DataFrame:
        dds = self._require_fit()
        try:
            res = self.deseq2.results(
                dds,
                contrast=ro.StrVector([GROUP_COLUMN, numerator, denominator]),
                alpha=self.alpha
            )
            if self.shrink_lfc:
                try:
                    logger.info("Applying ashr LFC shrinkage...")
                    res = self.deseq2.lfcShrink(
                        dds,
                        contrast=ro.StrVector([GROUP_COLUMN, numerator, denominator]),
                        res=res,
                        type="ashr"
                    )
                except Exception as e:
                    logger.warning(f"LFC shrinkage failed: {e}. Using unshrunk LFC.")

            with localconverter(ro.default_converter + pandas2ri.converter):
                results_df = ro.conversion.rpy2py(self.base.as_data_frame(res))
        except Exception as e:
            raise BackendError(f"DESeq2 contrast {numerator} vs {denominator} failed: {e}") from e

        results_df.index = self.gene_ids
        logger.debug(f"DESeq2 result columns: {list(results_df.columns)}")
        return results_df

    def normalized_counts(self) -> pd.DataFrame:
        dds = self._require_fit()
        norm_counts = self.bioc_generics.counts(dds, normalized=True)
        return self._to_pandas(norm_counts, self.gene_ids, self.sample_ids)

    def vst_counts(self) -> pd.DataFrame:
        dds = self._require_fit()
        if self._vsd is None:
            self._vsd = self.deseq2.varianceStabilizingTransformation(dds, blind=True)
        return self._to_pandas(self.summarized_experiment.assay(self._vsd), self.gene_ids, self.sample_ids)

    def size_factors(self) -> pd.Series:
        dds = self._require_fit()
        values = np.asarray(self.bioc_generics.sizeFactors(dds), dtype=float)
        return pd.Series(values, index=self.sample_ids, name="size_factor")

    def dispersions(self) -> pd.DataFrame:
        dds = self._require_fit()
        disp = pd.DataFrame(index=pd.Index(self.gene_ids, name="gene_id"))
        disp["baseMean"] = self.normalized_counts().mean(axis=1).to_numpy()
        disp["dispersions"] = np.asarray(self.bioc_generics.dispersions(dds), dtype=float)
        return disp


def r_backend_available() -> bool:
    """True when rpy2 imports and R has DESeq2 installed."""
    if not HAS_RPY2:
        return False
    try:
        importr('DESeq2')
    except Exception:
        return False
    return True
