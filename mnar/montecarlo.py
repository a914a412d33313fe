"""
Monte Carlo study of the competing estimators under MNAR dropout.

The study is run once, offline, and cached as CSV so the article can
report it without refitting hundreds of joint models.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path

import numpy as np
import pandas as pd

from .compare import MODEL_LABELS, fit_model
from .simulate import SimulationParams, simulate_dataset

logger = logging.getLogger(__name__)

MODELS = tuple(MODEL_LABELS)
RAW_FILE = "simulation_raw.csv"
SUMMARY_FILE = "simulation_summary.csv"
PARAMS_FILE = "simulation_params.json"
METRICS = ("mean_estimate", "bias", "rel_bias_pct", "emp_se", "mean_se",
           "rmse", "coverage")


def run_study(params=None, n_sims=100, models=MODELS, mechanism="mnar",
              seed=None, progress=True):
    """
    Replicate the simulation and collect slope-difference estimates.

    Parameters
    ----------
    params : SimulationParams or None
    n_sims : int
        Number of Monte Carlo replications.
    models : sequence of str
        Keys of compare.MODEL_LABELS.
    mechanism : str
        Dropout mechanism passed to simulate_dataset.
    seed : int or None
        Random seed for the whole study.
    progress : bool
        Log progress every 10% of replications.

    Returns
    -------
    DataFrame (long format) with columns
        sim, model, estimate, se, converged
    """
    params = params or SimulationParams()
    if n_sims < 1:
        raise ValueError("n_sims must be at least 1")
    unknown = set(models) - set(MODELS)
    if unknown:
        raise ValueError(f"unknown models: {sorted(unknown)}")
    if seed is not None:
        np.random.seed(seed)

    records = []
    every = max(1, n_sims // 10)
    for sim in range(n_sims):
        dataset = simulate_dataset(params, mechanism=mechanism)
        for model in models:
            try:
                _, contrast, converged = fit_model(model, dataset)
                est, se = contrast["estimate"], contrast["se"]
            except (ValueError, np.linalg.LinAlgError,
                    FloatingPointError) as exc:
                logger.warning("replicate %d: %s failed (%s)", sim, model,
                               exc)
                est, se, converged = np.nan, np.nan, False
            records.append(dict(sim=sim, model=model, estimate=est, se=se,
                                converged=converged))
        if progress and (sim + 1) % every == 0:
            logger.info("simulation %d / %d done", sim + 1, n_sims)

    return pd.DataFrame(records)


def summarise_study(raw, truth):
    """
    Performance of each estimator across replications.

    Only converged replicates with finite estimates and SEs are used. A
    model with no usable replicate is kept with n_valid = 0 and NaN
    metrics.

    Returns
    -------
    DataFrame indexed by model with columns
        label, n_valid, mean_estimate, bias, rel_bias_pct,
        emp_se, mean_se, rmse, coverage
    """
    ok = (raw["converged"].astype(bool)
          & np.isfinite(raw["estimate"]) & np.isfinite(raw["se"]))

    rows = {}
    for model in raw["model"].unique():
        g = raw[ok & (raw["model"] == model)]
        if g.empty:
            logger.warning("%s: no converged replicates", model)
            rows[model] = dict(label=MODEL_LABELS.get(model, model),
                               n_valid=0, **{c: np.nan for c in METRICS})
            continue
        est = g["estimate"].to_numpy()
        se = g["se"].to_numpy()
        covers = (est - 1.96 * se <= truth) & (truth <= est + 1.96 * se)
        rows[model] = dict(
            label=MODEL_LABELS.get(model, model),
            n_valid=len(g),
            mean_estimate=est.mean(),
            bias=est.mean() - truth,
            rel_bias_pct=(100 * (est.mean() - truth) / truth
                          if truth != 0 else np.nan),
            emp_se=est.std(ddof=1) if len(est) > 1 else np.nan,
            mean_se=se.mean(),
            rmse=np.sqrt(np.mean((est - truth) ** 2)),
            coverage=covers.mean(),
        )
    out = pd.DataFrame.from_dict(rows, orient="index",
                                 columns=["label", "n_valid"] + list(METRICS))
    order = [m for m in MODELS if m in out.index]
    out = out.loc[order + [m for m in out.index if m not in order]]
    out["n_valid"] = out["n_valid"].astype(int)
    out.index.name = "model"
    return out


def save_study(raw, summary, outdir, params=None, mechanism=None):
    """
    Write the raw estimates, summary and study settings to `outdir`.

    The settings file records the dropout mechanism and the simulation
    parameters so a reader can tell which study the cache holds.
    """
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    raw.to_csv(outdir / RAW_FILE, index=False)
    summary.to_csv(outdir / SUMMARY_FILE)
    settings = dict(mechanism=mechanism,
                    params=asdict(params) if params is not None else None)
    with open(outdir / PARAMS_FILE, "w") as fh:
        json.dump(settings, fh, indent=2)
    logger.info("simulation results cached in %s", outdir)
    return outdir


def load_study(outdir):
    """
    Read cached study results.

    Returns
    -------
    dict with keys raw, summary, params, mechanism (params and mechanism
    are None when not recorded), or None if no cache exists in `outdir`.
    """
    outdir = Path(outdir)
    if not (outdir / RAW_FILE).exists() or not (outdir / SUMMARY_FILE).exists():
        return None
    settings = {}
    if (outdir / PARAMS_FILE).exists():
        with open(outdir / PARAMS_FILE) as fh:
            settings = json.load(fh)
    params = settings.get("params")
    return dict(
        raw=pd.read_csv(outdir / RAW_FILE),
        summary=pd.read_csv(outdir / SUMMARY_FILE, index_col="model"),
        params=SimulationParams(**params) if params is not None else None,
        mechanism=settings.get("mechanism"),
    )


def cache_matches(cached, params, mechanism):
    """True if a loaded cache was produced with `params` and `mechanism`."""
    if cached is None:
        return False
    return cached["params"] == params and cached["mechanism"] == mechanism
