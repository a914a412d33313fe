"""Tests for pattern-mixture models."""

import numpy as np
import pandas as pd
import pytest

from mnar.pattern_mixture import WEIGHTINGS, fit_pattern_mixture, pattern_weights
from mnar.patterns import add_pattern


@pytest.fixture(scope="module")
def pmm_binary(mnar_dataset):
    return fit_pattern_mixture(mnar_dataset["data"], kind="binary")


class TestPatternWeights:
    """Tests for pattern_weights."""

    def test_group_weights_sum_to_one_within_arm(self, mnar_dataset):
        data = add_pattern(mnar_dataset["data"], kind="early_late")
        w = pattern_weights(data, ["completer", "late", "early"], "group")

        assert isinstance(w, pd.DataFrame)
        assert np.allclose(w.sum(axis=1), 1.0)

    def test_pooled_and_equal(self, mnar_dataset):
        data = add_pattern(mnar_dataset["data"], kind="binary")
        pooled = pattern_weights(data, ["completer", "dropout"], "pooled")
        equal = pattern_weights(data, ["completer", "dropout"], "equal")

        assert pooled.sum() == pytest.approx(1.0)
        assert equal.tolist() == [0.5, 0.5]

    def test_unknown_weighting_raises(self, mnar_dataset):
        data = add_pattern(mnar_dataset["data"], kind="binary")
        with pytest.raises(ValueError, match="unknown weighting"):
            pattern_weights(data, ["completer", "dropout"], "harmonic")

    def test_weightings_constant(self):
        assert WEIGHTINGS == ("group", "pooled", "equal")


class TestFitPatternMixture:
    """Tests for fit_pattern_mixture."""

    def test_binary_structure(self, pmm_binary):
        assert pmm_binary["kind"] == "binary"
        assert len(pmm_binary["fit"]["names"]) == 8
        assert pmm_binary["fit"]["pattern_levels"] == ["completer", "dropout"]
        assert pmm_binary["contrast"]["label"] == "PMM (binary)"
        assert "pattern" in pmm_binary["data"].columns
        assert np.isfinite(pmm_binary["contrast"]["se"])

    def test_contrast_is_weighted_pattern_average(self, pmm_binary):
        beta = dict(zip(pmm_binary["fit"]["names"], pmm_binary["fit"]["beta"]))
        w = pmm_binary["weights"]

        expected = 0.0
        for level in pmm_binary["fit"]["pattern_levels"]:
            expected += w.loc[1, level] * (beta[f"time|{level}"]
                                           + beta[f"time:treatment|{level}"])
            expected -= w.loc[0, level] * beta[f"time|{level}"]
        assert pmm_binary["contrast"]["estimate"] == pytest.approx(expected)

    def test_slopes_consistent_with_contrast(self, pmm_binary):
        slopes = pmm_binary["slopes"]

        assert pmm_binary["contrast"]["estimate"] == pytest.approx(
            slopes.loc[1, "estimate"] - slopes.loc[0, "estimate"])

    def test_early_late(self, mnar_dataset):
        pmm = fit_pattern_mixture(mnar_dataset["data"], kind="early_late")

        assert len(pmm["fit"]["names"]) == 12
        assert pmm["contrast"]["label"] == "PMM (early_late)"
        assert np.allclose(pmm["weights"].sum(axis=1), 1.0)

    def test_pooled_weights(self, mnar_dataset):
        pmm = fit_pattern_mixture(mnar_dataset["data"], kind="binary",
                                  weights="pooled")

        assert isinstance(pmm["weights"], pd.Series)
        assert np.isfinite(pmm["contrast"]["estimate"])

    def test_empty_pattern_cell_raises(self, mnar_dataset):
        # Remove every treated dropout: the dropout pattern has no treated arm
        data = mnar_dataset["data"]
        data = data[~((data["treatment"] == 1) & (data["dropout"] == 1))]

        with pytest.raises(ValueError, match="not identified"):
            fit_pattern_mixture(data, kind="binary")
