"""
Tests for the linear mixed model.

Tests cover:
- Log-Cholesky parameterisation and schedule blocking
- Design matrices with and without pattern stratification
- Recovery of the slope difference on complete data
- Agreement with statsmodels MixedLM (REML)
- Empirical Bayes random effects and subject slopes
"""

import numpy as np
import pytest

from mnar.design import BASE_TERMS, longitudinal_design, split_name
from mnar.lmm import (
    block_moments,
    coef_table,
    fit_lmm,
    posterior_random_effects,
    subject_slopes,
)
from mnar.patterns import add_pattern
from mnar.utils import d_to_theta, stack_by_schedule, theta_to_d


@pytest.fixture(scope="module")
def mnar_fit(mnar_dataset):
    return fit_lmm(mnar_dataset["data"])


class TestParameterisation:
    """Tests for the covariance helpers."""

    def test_log_cholesky_inverse(self):
        D = np.array([[10.0, -0.7], [-0.7, 0.2]])
        assert np.allclose(theta_to_d(d_to_theta(D)), D)

    def test_any_theta_gives_positive_definite(self):
        D = theta_to_d(np.array([3.0, -5.0, -4.0]))
        assert np.all(np.linalg.eigvalsh(D) > 0)


class TestStackBySchedule:
    """Tests for grouping subjects by visit schedule."""

    def test_complete_data_single_block(self, complete_dataset, small_params):
        data = complete_dataset["data"]
        X, _ = longitudinal_design(data)
        blocks = stack_by_schedule(data, X)

        assert len(blocks) == 1
        assert blocks[0]["y"].shape == (2 * small_params.n_per_group,
                                        small_params.n_time)
        assert blocks[0]["X"].shape[2] == 4

    def test_blocks_cover_all_rows(self, mnar_dataset):
        data = mnar_dataset["data"]
        X, _ = longitudinal_design(data)
        blocks = stack_by_schedule(data, X)

        assert sum(b["y"].size for b in blocks) == len(data)
        ids = np.concatenate([b["subjects"] for b in blocks])
        assert sorted(ids) == sorted(data["subject"].unique())

    def test_row_order_does_not_matter(self, mnar_dataset):
        data = mnar_dataset["data"]
        shuffled = data.sample(frac=1.0, random_state=0)
        X, _ = longitudinal_design(shuffled)
        blocks = stack_by_schedule(shuffled, X)

        for b in blocks:
            assert np.all(np.diff(b["times"]) > 0)
            assert np.allclose(b["X"][:, :, 1], b["times"])


class TestDesign:
    """Tests for longitudinal_design."""

    def test_base_design(self, mnar_dataset):
        X, names = longitudinal_design(mnar_dataset["data"])

        assert names == list(BASE_TERMS)
        assert np.allclose(X[:, 3], X[:, 1] * X[:, 2])

    def test_pattern_design(self, mnar_dataset):
        data = add_pattern(mnar_dataset["data"], kind="binary")
        X, names = longitudinal_design(data, pattern="pattern")

        assert len(names) == 8
        assert names[4] == "Intercept|dropout"
        # Each row belongs to exactly one pattern block
        assert np.allclose(X[:, 0] + X[:, 4], 1.0)

    def test_unidentified_pattern_raises(self, mnar_dataset):
        data = add_pattern(mnar_dataset["data"], kind="binary")
        # A pattern observed only at baseline has no slope
        data = data[(data["pattern"] == "completer") | (data["time"] == 0)]
        with pytest.raises(ValueError, match="not identified"):
            longitudinal_design(data, pattern="pattern")

    def test_split_name(self):
        assert split_name("time|early") == ("time", "early")
        assert split_name("time:treatment") == ("time:treatment", None)


class TestFitLMM:
    """Tests for fit_lmm."""

    def test_recovers_truth_on_complete_data(self, complete_dataset, small_params):
        fit = fit_lmm(complete_dataset["data"])
        idx = fit["names"].index("time:treatment")

        assert fit["converged"]
        assert abs(fit["beta"][idx] - small_params.beta_time_treatment) < 4 * fit["se"][idx]
        assert fit["sigma2"] == pytest.approx(small_params.sigma ** 2, rel=0.2)

    def test_ml_and_reml_share_fixed_effects_on_balanced_data(self, complete_dataset):
        # Z_i lies in the column space of X_i, so GLS equals OLS
        ml = fit_lmm(complete_dataset["data"], reml=False)
        reml = fit_lmm(complete_dataset["data"], reml=True)

        assert np.allclose(ml["beta"], reml["beta"], atol=1e-6)
        assert reml["loglik"] != ml["loglik"]

    def test_output_structure(self, mnar_fit, mnar_dataset):
        data = mnar_dataset["data"]

        assert mnar_fit["n_obs"] == len(data)
        assert mnar_fit["n_subjects"] == data["subject"].nunique()
        assert mnar_fit["vcov"].shape == (4, 4)
        assert np.allclose(mnar_fit["se"], np.sqrt(np.diag(mnar_fit["vcov"])))
        assert np.all(np.linalg.eigvalsh(mnar_fit["D"]) > 0)
        assert list(mnar_fit["random_effects"].columns) == ["b0", "b1"]
        assert mnar_fit["pattern"] is None

    def test_ml_loglik_equals_sum_of_block_densities(self, mnar_dataset):
        data = mnar_dataset["data"]
        fit = fit_lmm(data, reml=False)
        X, _ = longitudinal_design(data)
        total = sum(block_moments(b, fit["beta"], fit["D"], fit["sigma2"])[0].sum()
                    for b in stack_by_schedule(data, X))

        assert total == pytest.approx(fit["loglik"], abs=1e-6)

    def test_coef_table(self, mnar_fit):
        table = coef_table(mnar_fit)

        assert list(table.index) == list(BASE_TERMS)
        assert list(table.columns) == ["estimate", "se", "z", "p_value",
                                       "ci_lo", "ci_hi"]
        assert np.allclose(table["ci_hi"] - table["ci_lo"], 2 * 1.96 * table["se"])


class TestAgainstStatsmodels:
    """REML estimates agree with statsmodels MixedLM."""

    def test_fixed_effects_and_variance_components(self, mnar_dataset, mnar_fit):
        smf = pytest.importorskip("statsmodels.formula.api")
        data = mnar_dataset["data"]
        ref = smf.mixedlm("y ~ time * treatment", data, groups=data["subject"],
                          re_formula="~time").fit(reml=True)

        ours = dict(zip(mnar_fit["names"], mnar_fit["beta"]))
        ours_se = dict(zip(mnar_fit["names"], mnar_fit["se"]))
        for term in BASE_TERMS:
            assert ours[term] == pytest.approx(ref.fe_params[term], abs=2e-2)
            assert ours_se[term] == pytest.approx(ref.bse_fe[term], rel=5e-2)
        assert mnar_fit["sigma2"] == pytest.approx(ref.scale, rel=5e-2)
        assert np.allclose(mnar_fit["D"], np.asarray(ref.cov_re), rtol=0.15,
                           atol=0.05)


class TestRandomEffects:
    """Tests for posterior random effects and subject slopes."""

    def test_posterior_mean_equals_blup(self, mnar_fit, mnar_dataset):
        mean, cov = posterior_random_effects(mnar_fit, mnar_dataset["data"])

        assert np.allclose(mean.to_numpy(), mnar_fit["random_effects"].to_numpy(),
                           atol=1e-6)
        S = next(iter(cov.values()))
        assert S.shape == (2, 2)
        assert np.all(np.linalg.eigvalsh(S) > 0)

    def test_subjects_with_fewer_visits_shrink_more(self, mnar_fit, mnar_dataset):
        _, cov = posterior_random_effects(mnar_fit, mnar_dataset["data"])
        subjects = mnar_dataset["subjects"].set_index("subject")
        short = subjects.index[subjects["last_time"] == subjects["last_time"].min()][0]
        full = subjects.index[subjects["last_time"] == subjects["last_time"].max()][0]

        assert cov[short][1, 1] > cov[full][1, 1]

    def test_subject_slopes_track_true_slopes(self, mnar_fit, mnar_dataset):
        subjects = mnar_dataset["subjects"]
        slopes = subject_slopes(mnar_fit, subjects)

        assert len(slopes) == len(subjects)
        assert np.corrcoef(slopes, subjects["u1"])[0, 1] > 0.3

    def test_subject_slopes_reject_pattern_fit(self, mnar_dataset):
        data = add_pattern(mnar_dataset["data"], kind="binary")
        fit = fit_lmm(data, pattern="pattern")

        with pytest.raises(ValueError, match="without patterns"):
            subject_slopes(fit, mnar_dataset["subjects"])
