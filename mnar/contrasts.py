"""
Marginal means and linear contrasts of fitted growth models.

For a model stratified by dropout pattern, the quantity of interest is
the pattern-averaged slope in each arm,

    slope_arm = sum_p w_{p|arm} * (beta_time|p + arm * beta_time:treatment|p),

and the treatment effect is slope_1 - slope_0. Every such quantity is a
linear combination L'beta, so its standard error follows from the delta
method: SE = sqrt(L' V L). Pattern weights are treated as fixed.
"""

import numpy as np
import pandas as pd
from scipy import stats

from .design import BASE_TERMS, split_name


def linear_contrast(fit, L, label=None):
    """
    Estimate and Wald test for L'beta.

    Parameters
    ----------
    fit : dict
        Any fit with `beta` and `vcov`.
    L : ndarray, shape (k,)
        Contrast vector.
    label : str or None

    Returns
    -------
    dict with keys:
        label, estimate, se, z, p_value, ci_lo, ci_hi, L
    """
    L = np.asarray(L, dtype=float)
    est = float(L @ fit["beta"])
    se = float(np.sqrt(L @ fit["vcov"] @ L))
    z = est / se if se > 0 else np.nan
    return dict(
        label=label,
        estimate=est,
        se=se,
        z=z,
        p_value=float(2 * stats.norm.sf(abs(z))),
        ci_lo=est - 1.96 * se,
        ci_hi=est + 1.96 * se,
        L=L,
    )


def _normalise_weights(fit, weights):
    """
    Pattern weights as {arm: {level: w}}.

    Accepts None (fit without patterns, or equal weights), a mapping or
    Series of pooled weights, or a DataFrame with arms as rows.
    """
    levels = fit.get("pattern_levels")
    if levels is None:
        return {0: {None: 1.0}, 1: {None: 1.0}}

    if weights is None:
        w = {lvl: 1.0 / len(levels) for lvl in levels}
        return {0: w, 1: w}
    if isinstance(weights, pd.DataFrame):
        out = {arm: {lvl: float(weights.loc[arm].get(lvl, 0.0))
                     for lvl in levels}
               for arm in (0, 1)}
    else:
        w = {lvl: float(pd.Series(weights).get(lvl, 0.0)) for lvl in levels}
        out = {0: w, 1: w}

    for arm, w in out.items():
        if not np.isclose(sum(w.values()), 1.0):
            raise ValueError(
                f"pattern weights for arm {arm} sum to "
                f"{sum(w.values()):.4f}, not 1"
            )
    return out


def _contrast_vector(fit, coefs, weights):
    """
    Build L from per-term multipliers averaged over patterns.

    coefs : dict term -> multiplier (e.g. {"time": 1, "time:treatment": 1})
    weights : {level: w} for a single arm
    """
    L = np.zeros(len(fit["names"]))
    for i, name in enumerate(fit["names"]):
        term, level = split_name(name)
        if term in coefs and level in weights:
            L[i] = coefs[term] * weights[level]
    return L


def marginal_slopes(fit, weights=None):
    """
    Pattern-averaged time slope in each arm.

    Returns
    -------
    DataFrame indexed by treatment arm with columns
        estimate, se, z, p_value, ci_lo, ci_hi
    """
    w = _normalise_weights(fit, weights)
    rows = {}
    for arm in (0, 1):
        L = _contrast_vector(fit, {"time": 1.0, "time:treatment": arm}, w[arm])
        res = linear_contrast(fit, L, label=f"slope (treatment={arm})")
        rows[arm] = {k: v for k, v in res.items() if k not in ("label", "L")}
    out = pd.DataFrame.from_dict(rows, orient="index")
    out.index.name = "treatment"
    return out


def slope_difference(fit, weights=None, label="time:treatment"):
    """
    Treatment-minus-control difference in pattern-averaged slopes.

    For a fit without patterns this equals the time:treatment
    coefficient and its standard error.
    """
    w = _normalise_weights(fit, weights)
    L = (_contrast_vector(fit, {"time": 1.0, "time:treatment": 1.0}, w[1])
         - _contrast_vector(fit, {"time": 1.0}, w[0]))
    return linear_contrast(fit, L, label=label)


def marginal_means(fit, times, weights=None):
    """
    Estimated mean outcome by arm and time, averaged over patterns.

    Returns
    -------
    DataFrame with columns
        treatment, time, estimate, se, ci_lo, ci_hi
    """
    w = _normalise_weights(fit, weights)
    rows = []
    for arm in (0, 1):
        for t in times:
            coefs = dict(zip(BASE_TERMS, (1.0, t, arm, t * arm)))
            res = linear_contrast(fit, _contrast_vector(fit, coefs, w[arm]))
            rows.append(dict(treatment=arm, time=t, estimate=res["estimate"],
                             se=res["se"], ci_lo=res["ci_lo"],
                             ci_hi=res["ci_hi"]))
    return pd.DataFrame(rows)
