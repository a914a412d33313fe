"""
Pattern-mixture model (PMM) for informative dropout.

Little (1993): factor the joint distribution of outcomes and dropout as
f(y | pattern) P(pattern). Fitting the growth model separately within
each dropout pattern lets completers and dropouts have different
trajectories, and the marginal treatment effect is recovered by
averaging the pattern-specific slopes with the pattern proportions.
"""

import logging

import pandas as pd

from .contrasts import slope_difference, marginal_slopes
from .lmm import fit_lmm
from .patterns import add_pattern, pattern_proportions

logger = logging.getLogger(__name__)

WEIGHTINGS = ("group", "pooled", "equal")


def pattern_weights(data, levels, weights="group"):
    """
    Pattern weights for averaging.

    group  : within-arm proportions (DataFrame, arms x patterns)
    pooled : proportions over both arms (Series)
    equal  : 1 / n_patterns for every pattern (Series)
    """
    if weights == "group":
        return pattern_proportions(data, by_group=True)
    if weights == "pooled":
        return pattern_proportions(data, by_group=False)
    if weights == "equal":
        return pd.Series(1.0 / len(levels), index=levels)
    raise ValueError(
        f"unknown weighting {weights!r}; expected one of {WEIGHTINGS}"
    )


def fit_pattern_mixture(data, kind="binary", weights="group", reml=True,
                        cutoff=None):
    """
    Fit a pattern-stratified LMM and average over dropout patterns.

    Parameters
    ----------
    data : DataFrame
        Observed long data with `dropout` and `dropout_time` columns.
    kind : {"binary", "early_late"}
        Pattern definition (see patterns.add_pattern).
    weights : {"group", "pooled", "equal"}
        How pattern-specific slopes are averaged.
    reml : bool
    cutoff : float or None
        Early/late split for kind="early_late".

    Returns
    -------
    dict with keys:
        fit       : pattern-stratified LMM fit
        weights   : the weights used
        contrast  : slope difference (estimate, se, z, p_value, CI)
        slopes    : pattern-averaged slopes by arm
        kind      : pattern definition
        data      : data with the pattern column
    """
    data = add_pattern(data, kind=kind, cutoff=cutoff)
    fit = fit_lmm(data, pattern="pattern", reml=reml)
    w = pattern_weights(data, fit["pattern_levels"], weights=weights)
    logger.debug("PMM (%s) pattern levels: %s", kind, fit["pattern_levels"])

    return dict(
        fit=fit,
        weights=w,
        contrast=slope_difference(fit, w, label=f"PMM ({kind})"),
        slopes=marginal_slopes(fit, w),
        kind=kind,
        data=data,
    )
