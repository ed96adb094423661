"""
Tissue RNA-seq - Experimental Design Tests
"""
import numpy as np
import pandas as pd
import pytest

from tissue_rnaseq.utils.design import (
    GROUP_COLUMN,
    build_group_factor,
    contrast_label,
    design_formula,
    filter_low_counts,
    make_contrasts,
    sanitize_level,
    slugify,
)
from tissue_rnaseq.utils.exceptions import InputDataError


@pytest.fixture
def liver_samples(sample_metadata):
    return sample_metadata[sample_metadata["tissue"] == "liver"].set_index("sample_id")


class TestGroupFactor:
    """Test cases for the genotype x treatment factor."""

    def test_levels_reference_first(self, liver_samples):
        """Reference genotype and treatment come first, genotype-major."""
        grouped, levels = build_group_factor(
            liver_samples, reference_genotype="WT", reference_treatment="ctrl"
        )
        assert levels == ["WT.ctrl", "WT.treated", "KO.ctrl", "KO.treated"]
        assert list(grouped[GROUP_COLUMN].cat.categories) == levels
        assert grouped.loc["liver_KO_treated_1", GROUP_COLUMN] == "KO.treated"

    def test_levels_first_seen_without_reference(self, liver_samples):
        shuffled = liver_samples.iloc[::-1]
        _, levels = build_group_factor(shuffled)
        assert levels[0] == "KO.treated"

    def test_unknown_reference(self, liver_samples):
        with pytest.raises(InputDataError, match="Reference level"):
            build_group_factor(liver_samples, reference_genotype="HET")

    def test_missing_column(self, liver_samples):
        with pytest.raises(InputDataError):
            build_group_factor(liver_samples.drop(columns=["treatment"]))

    def test_absent_combination_dropped(self, liver_samples):
        """Only combinations present in the data become levels."""
        subset = liver_samples[~((liver_samples["genotype"] == "KO") & (liver_samples["treatment"] == "treated"))]
        _, levels = build_group_factor(subset, reference_genotype="WT", reference_treatment="ctrl")
        assert levels == ["WT.ctrl", "WT.treated", "KO.ctrl"]

    def test_sanitized_levels(self):
        samples = pd.DataFrame({"genotype": ["wild type", "Ko/Ko"], "treatment": ["high fat", "high fat"]})
        _, levels = build_group_factor(samples)
        assert levels == ["wild-type.high-fat", "Ko-Ko.high-fat"]

    def test_sanitize_and_slugify(self):
        assert sanitize_level(" a b ") == "a-b"
        assert sanitize_level("___") == "NA"
        assert slugify("Skeletal muscle") == "Skeletal_muscle"


class TestLowCountFilter:
    """Test cases for the low-count gene filter."""

    def test_min_samples_defaults_to_smallest_group(self):
        counts = pd.DataFrame(
            {"s1": [20, 20, 0], "s2": [20, 0, 0], "s3": [0, 0, 50], "s4": [0, 0, 0]},
            index=["g1", "g2", "g3"]
        )
        groups = pd.Series(["a", "a", "b", "b"], index=counts.columns)

        filtered = filter_low_counts(counts, min_count=10, groups=groups)

        assert list(filtered.index) == ["g1"]

    def test_explicit_min_samples(self):
        counts = pd.DataFrame({"s1": [20, 5], "s2": [1, 5]}, index=["g1", "g2"])
        assert list(filter_low_counts(counts, min_count=10, min_samples=1).index) == ["g1"]

    def test_filter_keeps_signal_genes(self, sample_count_matrix):
        filtered = filter_low_counts(sample_count_matrix, min_count=10, min_samples=3)
        assert len(filtered) == len(sample_count_matrix)


class TestContrasts:
    """Test cases for contrast planning."""

    LEVELS = ["WT.ctrl", "WT.treated", "KO.ctrl", "KO.treated"]

    def test_all_pairs(self):
        """Every unordered pair once, later level over earlier level."""
        contrasts = make_contrasts(self.LEVELS)
        assert len(contrasts) == 6
        assert ("WT.treated", "WT.ctrl") in contrasts
        assert ("KO.treated", "KO.ctrl") in contrasts
        assert ("WT.ctrl", "WT.treated") not in contrasts

    def test_vs_reference(self):
        contrasts = make_contrasts(self.LEVELS, mode="vs_reference")
        assert contrasts == [("WT.treated", "WT.ctrl"), ("KO.ctrl", "WT.ctrl"), ("KO.treated", "WT.ctrl")]

    def test_explicit_skips_missing_levels(self):
        contrasts = make_contrasts(self.LEVELS, explicit=[["KO.treated", "WT.treated"], ["HET.ctrl", "WT.ctrl"]])
        assert contrasts == [("KO.treated", "WT.treated")]

    def test_explicit_rejects_self_contrast(self):
        with pytest.raises(ValueError):
            make_contrasts(self.LEVELS, explicit=[["WT.ctrl", "WT.ctrl"]])

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            make_contrasts(self.LEVELS, mode="interaction")

    def test_label(self):
        assert contrast_label("KO.ctrl", "WT.ctrl") == "KO.ctrl_vs_WT.ctrl"


class TestDesignFormula:
    """Test cases for cohort covariate handling."""

    def test_cohort_used_when_balanced(self, liver_samples):
        grouped, _ = build_group_factor(liver_samples)
        assert design_formula(grouped) == "~ cohort + group"

    def test_cohort_dropped_when_confounded(self, liver_samples):
        grouped, _ = build_group_factor(liver_samples)
        grouped["cohort"] = np.where(grouped["genotype"] == "WT", "c1", "c2")
        assert design_formula(grouped) == "~ group"

    def test_single_cohort(self, liver_samples):
        grouped, _ = build_group_factor(liver_samples)
        grouped["cohort"] = "c1"
        assert design_formula(grouped) == "~ group"

    def test_cohort_disabled(self, liver_samples):
        grouped, _ = build_group_factor(liver_samples)
        assert design_formula(grouped, use_cohort=False) == "~ group"
        assert design_formula(grouped.drop(columns=["cohort"])) == "~ group"
