"""
Tests for the data-generating process and the dropout mechanisms.

Tests cover:
- SimulationParams validation and derived quantities
- Complete data shapes and reproducibility
- Monotone dropout with the baseline visit always kept
- MNAR dropout driven by the random slope in opposite directions by arm
- MCAR and MAR mechanisms
"""

import numpy as np
import pandas as pd
import pytest

from mnar.simulate import (
    MECHANISMS,
    SimulationParams,
    simulate_complete,
    simulate_dataset,
    survival_frame,
)


class TestSimulationParams:
    """Tests for the parameter container."""

    def test_covariance_matrix(self):
        params = SimulationParams(sd_u0=2.0, sd_u1=0.5, cor_u=-0.5)
        D = params.D

        assert D.shape == (2, 2)
        assert D[0, 0] == pytest.approx(4.0)
        assert D[1, 1] == pytest.approx(0.25)
        assert D[0, 1] == pytest.approx(-0.5)
        assert D[1, 0] == D[0, 1]

    def test_t_max_and_truth(self):
        params = SimulationParams(n_time=6, beta_time_treatment=-0.4)

        assert params.t_max == 5.0
        assert params.true_slope_difference == -0.4

    @pytest.mark.parametrize("kwargs", [
        dict(n_time=1),
        dict(n_per_group=0),
        dict(cor_u=1.0),
        dict(sigma=0.0),
        dict(mcar_rate=1.5),
    ])
    def test_invalid_params_raise(self, kwargs):
        with pytest.raises(ValueError):
            SimulationParams(**kwargs).validate()


class TestSimulateComplete:
    """Tests for the complete (no dropout) trial."""

    def test_shapes(self, small_params):
        ds = simulate_complete(small_params, seed=1)
        n_sub = 2 * small_params.n_per_group

        assert len(ds["data"]) == n_sub * small_params.n_time
        assert len(ds["subjects"]) == n_sub
        assert set(ds["data"]["treatment"]) == {0, 1}
        assert (ds["subjects"]["treatment"] == 1).sum() == small_params.n_per_group

    def test_no_dropout(self, complete_dataset, small_params):
        subjects = complete_dataset["subjects"]

        assert complete_dataset["mechanism"] == "complete"
        assert subjects["dropout"].sum() == 0
        assert (subjects["event"] == 0).all()
        assert np.allclose(subjects["event_time"], small_params.t_max)
        assert len(complete_dataset["data"]) == len(complete_dataset["data_complete"])

    def test_seed_is_reproducible(self, small_params):
        a = simulate_dataset(small_params, mechanism="mnar", seed=123)
        b = simulate_dataset(small_params, mechanism="mnar", seed=123)
        c = simulate_dataset(small_params, mechanism="mnar", seed=124)

        pd.testing.assert_frame_equal(a["data"], b["data"])
        assert not np.allclose(a["subjects"]["u1"], c["subjects"]["u1"])

    def test_random_effect_moments(self):
        params = SimulationParams(n_per_group=2000)
        subjects = simulate_complete(params, seed=3)["subjects"]

        assert subjects["u1"].std() == pytest.approx(params.sd_u1, rel=0.05)
        assert subjects["u0"].std() == pytest.approx(params.sd_u0, rel=0.05)
        assert np.corrcoef(subjects["u0"], subjects["u1"])[0, 1] == \
            pytest.approx(params.cor_u, abs=0.05)


class TestDropout:
    """Tests shared by all dropout mechanisms."""

    @pytest.mark.parametrize("mechanism", ["mcar", "mar", "mnar"])
    def test_monotone_with_baseline(self, small_params, mechanism):
        ds = simulate_dataset(small_params, mechanism=mechanism, seed=7)
        data = ds["data"]
        subjects = ds["subjects"].set_index("subject")

        # Every subject keeps the baseline visit
        assert data.loc[data["time"] == 0, "subject"].nunique() == len(subjects)

        # Observed visits are 0..last_time with no gaps
        counts = data.groupby("subject")["time"].agg(["count", "max"])
        assert (counts["count"] == counts["max"] + 1).all()
        assert np.allclose(counts["max"], subjects.loc[counts.index, "last_time"])

        # Nothing observed after the dropout time except the baseline
        after = (data["time"] >= data["dropout_time"]) & (data["time"] > 0)
        assert not after.any()

    @pytest.mark.parametrize("mechanism", ["mcar", "mar", "mnar"])
    def test_event_times_positive_and_bounded(self, small_params, mechanism):
        subjects = simulate_dataset(small_params, mechanism=mechanism,
                                    seed=8)["subjects"]

        assert (subjects["event_time"] > 0).all()
        assert (subjects["event_time"] <= small_params.t_max).all()
        assert (subjects["event"] == subjects["dropout"]).all()

    def test_unknown_mechanism_raises(self, small_params):
        with pytest.raises(ValueError, match="unknown dropout mechanism"):
            simulate_dataset(small_params, mechanism="informative")

    def test_mechanisms_constant(self):
        assert MECHANISMS == ("complete", "mcar", "mar", "mnar")

    def test_survival_frame(self):
        subjects = pd.DataFrame(dict(
            subject=[0, 1], dropout=[1, 0], dropout_time=[2.5, np.inf],
        ))
        out = survival_frame(subjects, t_max=10.0)

        assert out["event_time"].tolist() == [2.5, 10.0]
        assert out["event"].tolist() == [1, 0]


class TestMNARDropout:
    """Tests for random-slope-dependent dropout."""

    def test_opposite_slope_dependence_by_arm(self):
        params = SimulationParams(n_per_group=400)
        subjects = simulate_dataset(params, mechanism="mnar",
                                    seed=21)["subjects"]

        control = subjects[subjects["treatment"] == 0]
        treated = subjects[subjects["treatment"] == 1]
        # Control: improvers (low slopes) leave
        assert (control.loc[control["dropout"] == 1, "u1"].mean()
                < control.loc[control["dropout"] == 0, "u1"].mean())
        # Treatment: deteriorators (high slopes) leave
        assert (treated.loc[treated["dropout"] == 1, "u1"].mean()
                > treated.loc[treated["dropout"] == 0, "u1"].mean())

    def test_stronger_loading_selects_more_sharply(self):
        def control_gap(loading, seed):
            params = SimulationParams(n_per_group=1000,
                                      dropout_slope_control=-loading,
                                      dropout_slope_treatment=loading)
            subjects = simulate_dataset(params, mechanism="mnar",
                                        seed=seed)["subjects"]
            control = subjects[subjects["treatment"] == 0]
            return (control.loc[control["dropout"] == 0, "u1"].mean()
                    - control.loc[control["dropout"] == 1, "u1"].mean())

        assert control_gap(4.0, 23) > control_gap(0.5, 23) + 0.5 * np.sqrt(0.2)

    def test_dropout_rates_similar_by_arm(self):
        params = SimulationParams(n_per_group=1000)
        subjects = simulate_dataset(params, mechanism="mnar",
                                    seed=22)["subjects"]
        rates = subjects.groupby("treatment")["dropout"].mean()

        assert abs(rates[0] - rates[1]) < 0.08


class TestOtherMechanisms:
    """Tests for MCAR and MAR dropout."""

    def test_mcar_rate(self):
        params = SimulationParams(n_per_group=500, mcar_rate=0.3)
        subjects = simulate_dataset(params, mechanism="mcar",
                                    seed=5)["subjects"]

        assert subjects["dropout"].mean() == pytest.approx(0.3, abs=0.05)

    def test_mcar_independent_of_slope(self):
        params = SimulationParams(n_per_group=1000)
        subjects = simulate_dataset(params, mechanism="mcar",
                                    seed=6)["subjects"]
        gap = (subjects.loc[subjects["dropout"] == 1, "u1"].mean()
               - subjects.loc[subjects["dropout"] == 0, "u1"].mean())

        assert abs(gap) < 0.15 * params.sd_u1

    def test_mar_dropout_follows_observed_outcome(self):
        params = SimulationParams(n_per_group=400, mar_outcome=0.5)
        ds = simulate_dataset(params, mechanism="mar", seed=9)
        subjects = ds["subjects"]
        baseline = ds["data_complete"].query("time == 0").set_index("subject")["y"]
        y0 = baseline.reindex(subjects["subject"]).to_numpy()

        # Higher outcomes raise the per-visit dropout probability
        assert (y0[subjects["dropout"].to_numpy() == 1].mean()
                > y0[subjects["dropout"].to_numpy() == 0].mean())

    def test_mar_dropout_times_within_visit_intervals(self, small_params):
        subjects = simulate_dataset(small_params, mechanism="mar",
                                    seed=10)["subjects"]
        dropped = subjects[subjects["dropout"] == 1]

        # Dropout before visit t falls in (t - 1, t] and t - 1 is the last visit
        assert np.all(dropped["last_time"] == np.ceil(dropped["dropout_time"]) - 1)
