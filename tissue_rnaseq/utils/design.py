"""
Experimental design helpers.

Builds the per-tissue grouped dataset used by the DESeq2 fit:
- combined genotype x treatment factor with a stable level order
- low-count gene filter
- pairwise contrast list
- design formula (optionally adjusted for cohort)
"""

import itertools
import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import InputDataError

logger = logging.getLogger(__name__)

GROUP_COLUMN = "group"

# Index-table columns holding group labels; numeric-looking labels must stay strings
LEVEL_DTYPES = {"contrast": str, "numerator": str, "denominator": str}

Contrast = Tuple[str, str]  # (numerator, denominator)


def sanitize_level(value) -> str:
    """Make a factor level safe for design formulas and file names."""
    text = re.sub(r"[^A-Za-z0-9.]+", "-", str(value).strip())
    return text.strip("-") or "NA"


def slugify(value) -> str:
    """Lower-case file-name token for a tissue or contrast label."""
    text = re.sub(r"[^A-Za-z0-9.\-]+", "_", str(value).strip())
    return text.strip("_") or "NA"


def _ordered_levels(values: pd.Series, reference=None) -> List[str]:
    """First-seen order of ``values`` with ``reference`` moved to the front."""
    levels = list(dict.fromkeys(values.astype(str)))
    if reference is not None:
        reference = str(reference)
        if reference not in levels:
            raise InputDataError(
                f"Reference level '{reference}' not found among {levels}"
            )
        levels.remove(reference)
        levels.insert(0, reference)
    return levels


def build_group_factor(
    samples: pd.DataFrame,
    genotype_column: str = "genotype",
    treatment_column: str = "treatment",
    separator: str = ".",
    reference_genotype=None,
    reference_treatment=None,
) -> Tuple[pd.DataFrame, List[str]]:
    """Annotate samples with the combined genotype x treatment ``group`` factor.

    Levels are ordered genotype-major: every treatment of the reference
    genotype first, reference treatment first within each genotype. The first
    level is therefore the reference group.

    Returns:
        (samples with a categorical ``group`` column, ordered group levels)
    """
    for col in (genotype_column, treatment_column):
        if col not in samples.columns:
            raise InputDataError(f"Column '{col}' not in sample metadata")

    genotypes = _ordered_levels(samples[genotype_column], reference_genotype)
    treatments = _ordered_levels(samples[treatment_column], reference_treatment)

    def label(genotype, treatment) -> str:
        return f"{sanitize_level(genotype)}{separator}{sanitize_level(treatment)}"

    all_levels = [label(g, t) for g in genotypes for t in treatments]
    if len(set(all_levels)) != len(all_levels):
        raise InputDataError(
            f"Genotype/treatment values collide after sanitizing: {all_levels}"
        )

    grouped = samples.copy()
    grouped[GROUP_COLUMN] = [
        label(g, t)
        for g, t in zip(grouped[genotype_column].astype(str), grouped[treatment_column].astype(str))
    ]
    present = set(grouped[GROUP_COLUMN])
    levels = [lvl for lvl in all_levels if lvl in present]
    grouped[GROUP_COLUMN] = pd.Categorical(grouped[GROUP_COLUMN], categories=levels)

    return grouped, levels


def filter_low_counts(
    counts: pd.DataFrame,
    min_count: int = 10,
    min_samples: Optional[int] = None,
    groups: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """Keep genes with ``count >= min_count`` in at least ``min_samples`` samples.

    When ``min_samples`` is None it defaults to the smallest group size
    (or 1 without groups).
    """
    if min_samples is None:
        if groups is not None and len(groups) > 0:
            min_samples = int(pd.Series(groups).value_counts().loc[lambda s: s > 0].min())
        else:
            min_samples = 1

    keep = (counts >= min_count).sum(axis=1) >= min_samples
    logger.debug(
        f"Low-count filter (min_count={min_count}, min_samples={min_samples}): "
        f"{int(keep.sum())}/{len(counts)} genes kept"
    )
    return counts.loc[keep]


def contrast_label(numerator: str, denominator: str) -> str:
    return f"{numerator}_vs_{denominator}"


def make_contrasts(
    levels: Sequence[str],
    mode: str = "all_pairs",
    explicit: Optional[Iterable[Sequence[str]]] = None,
) -> List[Contrast]:
    """Contrast list for a tissue.

    Modes:
        all_pairs    - every pair of levels, later level vs earlier level
        vs_reference - every level vs the first (reference) level
        explicit     - pairs from ``explicit``; pairs naming a missing level
                       are skipped with a warning
    """
    levels = list(levels)

    if explicit:
        contrasts = []
        for pair in explicit:
            if len(pair) != 2:
                raise ValueError(f"Contrast must be [numerator, denominator], got {pair}")
            numerator, denominator = str(pair[0]), str(pair[1])
            if numerator == denominator:
                raise ValueError(f"Contrast compares a level with itself: {pair}")
            if numerator not in levels or denominator not in levels:
                logger.warning(f"Skipping contrast {numerator} vs {denominator}: level not present in {levels}")
                continue
            contrasts.append((numerator, denominator))
        return contrasts

    if mode == "all_pairs":
        return [(later, earlier) for earlier, later in itertools.combinations(levels, 2)]
    if mode == "vs_reference":
        return [(level, levels[0]) for level in levels[1:]]

    raise ValueError(f"Unknown contrast mode: {mode}")


def design_formula(
    samples: pd.DataFrame,
    cohort_column: Optional[str] = "cohort",
    use_cohort: bool = True,
) -> str:
    """``~ cohort + group`` when cohort is usable as a covariate, else ``~ group``."""
    if not use_cohort or not cohort_column or cohort_column not in samples.columns:
        return f"~ {GROUP_COLUMN}"

    cohorts = samples[cohort_column].astype(str)
    if cohorts.nunique() < 2:
        return f"~ {GROUP_COLUMN}"

    # cohort + group must give a full-rank model matrix
    design = pd.concat(
        [
            pd.Series(1.0, index=samples.index, name="Intercept"),
            pd.get_dummies(cohorts, prefix=cohort_column, drop_first=True, dtype=float),
            pd.get_dummies(samples[GROUP_COLUMN].astype(str), prefix=GROUP_COLUMN, drop_first=True, dtype=float),
        ],
        axis=1,
    )
    if np.linalg.matrix_rank(design.to_numpy()) < design.shape[1]:
        logger.warning(
            f"Cohort '{cohort_column}' is confounded with group; fitting ~ {GROUP_COLUMN}"
        )
        return f"~ {GROUP_COLUMN}"

    return f"~ {cohort_column} + {GROUP_COLUMN}"
