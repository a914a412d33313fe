"""Shared fixtures: small simulated trials reused across test modules."""

import matplotlib
matplotlib.use("Agg")

import pytest

from mnar.simulate import SimulationParams, simulate_dataset


@pytest.fixture(scope="session")
def small_params():
    """A trial small enough to fit every model quickly."""
    return SimulationParams(n_per_group=60)


@pytest.fixture(scope="session")
def mnar_dataset(small_params):
    return simulate_dataset(small_params, mechanism="mnar", seed=11)


@pytest.fixture(scope="session")
def complete_dataset(small_params):
    return simulate_dataset(small_params, mechanism="complete", seed=11)
