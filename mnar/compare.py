"""
Model comparison on a single simulated trial.

Fits the competing analyses of the treatment effect on the slope:

  1. LMM on the complete data (the benchmark nobody gets to see)
  2. LMM on the observed data (valid under MAR, biased under MNAR)
  3. Pattern-mixture model, completers vs dropouts
  4. Pattern-mixture model, completers vs late vs early dropouts
  5. Joint model with the random slope driving the dropout hazard
"""

import logging

import numpy as np
import pandas as pd

from .contrasts import slope_difference
from .joint import fit_joint
from .lmm import fit_lmm, subject_slopes
from .pattern_mixture import fit_pattern_mixture
from .survival import fit_cox

logger = logging.getLogger(__name__)

MODEL_LABELS = {
    "lmm_complete": "LMM (complete data)",
    "lmm": "LMM (observed data)",
    "pmm_binary": "PMM (completer/dropout)",
    "pmm_early_late": "PMM (completer/late/early)",
    "joint": "Joint model (slope)",
}


def _row(model, contrast, converged):
    return dict(
        model=model,
        label=MODEL_LABELS[model],
        estimate=contrast["estimate"],
        se=contrast["se"],
        ci_lo=contrast["ci_lo"],
        ci_hi=contrast["ci_hi"],
        p_value=contrast["p_value"],
        converged=converged,
    )


def fit_model(model, dataset, reml=True):
    """
    Fit one of the comparison models to a simulated dataset.

    Returns
    -------
    fit : dict
        The underlying fit (LMM, PMM or joint model result).
    contrast : dict
        Treatment-by-time slope difference.
    converged : bool
    """
    data = dataset["data"]
    if model == "lmm_complete":
        fit = fit_lmm(dataset["data_complete"], reml=reml)
        return fit, slope_difference(fit), fit["converged"]
    if model == "lmm":
        fit = fit_lmm(data, reml=reml)
        return fit, slope_difference(fit), fit["converged"]
    if model in ("pmm_binary", "pmm_early_late"):
        kind = model.split("_", 1)[1]
        pmm = fit_pattern_mixture(data, kind=kind, reml=reml)
        return pmm, pmm["contrast"], pmm["fit"]["converged"]
    if model == "joint":
        fit = fit_joint(data, dataset["subjects"])
        return fit, slope_difference(fit), fit["converged"]
    raise ValueError(
        f"unknown model {model!r}; expected one of {list(MODEL_LABELS)}"
    )


def fit_all_models(dataset, joint=True, reml=True):
    """
    Fit every comparison model to one dataset.

    Parameters
    ----------
    dataset : dict
        Output of simulate.simulate_dataset.
    joint : bool
        Include the (slower) joint model.
    reml : bool
        REML for the LMM-based fits.

    Returns
    -------
    dict with keys:
        table : DataFrame, one row per model (model, label, estimate,
                se, ci_lo, ci_hi, p_value, converged)
        fits  : dict model -> fit object
    """
    models = [m for m in MODEL_LABELS if joint or m != "joint"]
    rows, fits = [], {}
    for model in models:
        fit, contrast, converged = fit_model(model, dataset, reml=reml)
        logger.debug("%s: %.3f (%.3f)", model, contrast["estimate"],
                     contrast["se"])
        fits[model] = fit
        rows.append(_row(model, contrast, converged))
    return dict(table=pd.DataFrame(rows), fits=fits)


def compare_to_truth(table, truth):
    """Add truth, bias and CI coverage columns to a comparison table."""
    table = table.copy()
    table["truth"] = truth
    table["bias"] = table["estimate"] - truth
    table["covers"] = (table["ci_lo"] <= truth) & (truth <= table["ci_hi"])
    return table


def dropout_summary(subjects):
    """
    Dropout by arm.

    Returns
    -------
    DataFrame indexed by treatment with columns
        n, n_dropout, dropout_rate, mean_dropout_time
    """
    g = subjects.groupby("treatment")
    out = pd.DataFrame(dict(
        n=g.size(),
        n_dropout=g["dropout"].sum(),
        dropout_rate=g["dropout"].mean(),
        mean_dropout_time=g["dropout_time"].apply(
            lambda s: s[np.isfinite(s)].mean()),
    ))
    return out


def dropout_hazard_model(subjects, fit):
    """
    Cox model of dropout on treatment and the estimated subject slope.

    A clear association between the empirical Bayes slope and the
    dropout hazard, differing by arm, is the footprint of
    slope-dependent (MNAR) dropout. The interaction term captures the
    arm-specific direction.
    """
    slopes = subject_slopes(fit, subjects).to_numpy()
    tx = subjects["treatment"].to_numpy(dtype=float)
    X = np.column_stack([tx, slopes, tx * slopes])
    return fit_cox(subjects["event_time"].to_numpy(),
                   subjects["event"].to_numpy(), X,
                   names=["treatment", "slope", "treatment:slope"])
