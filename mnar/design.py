"""
Fixed-effects design matrices for the longitudinal models.

The base model is the two-arm linear growth model

    y_ij = b0 + b1 * t_ij + b2 * Tx_i + b3 * (t_ij * Tx_i) + ...

where b3 (time:treatment) is the treatment effect on the slope.
A pattern-mixture fit repeats the four columns once per dropout
pattern (cell-means by pattern), so every pattern has its own growth
curves in both arms.
"""

import numpy as np
import pandas as pd

BASE_TERMS = ("Intercept", "time", "treatment", "time:treatment")


def pattern_levels(data, pattern):
    """Observed levels of the pattern column, in category order."""
    col = data[pattern]
    if isinstance(col.dtype, pd.CategoricalDtype):
        return [lvl for lvl in col.cat.categories if (col == lvl).any()]
    return sorted(col.unique())


def longitudinal_design(data, pattern=None, time_col="time",
                        group_col="treatment"):
    """
    Build the fixed-effects design for the linear growth model.

    Parameters
    ----------
    data : DataFrame
        Long-format data.
    pattern : str or None
        Name of a dropout-pattern column. If given, the design has one
        block of BASE_TERMS per observed pattern level.

    Returns
    -------
    X : ndarray, shape (n_obs, k)
    names : list of str
        Column names; pattern blocks are labelled "<term>|<level>".
    """
    t = data[time_col].to_numpy(dtype=float)
    g = data[group_col].to_numpy(dtype=float)
    base = np.column_stack([np.ones(len(t)), t, g, t * g])
    if pattern is None:
        return base, list(BASE_TERMS)

    blocks = []
    names = []
    for level in pattern_levels(data, pattern):
        ind = (data[pattern] == level).to_numpy()
        # Both arms must have enough visits to separate level and slope
        for arm in (0, 1):
            rows = base[ind & (g == arm)]
            if rows.shape[0] == 0 or np.ptp(rows[:, 1]) == 0:
                raise ValueError(
                    f"pattern '{level}' has no time variation in arm "
                    f"{arm}; its growth curve is not identified"
                )
        blocks.append(base * ind[:, None])
        names.extend(f"{term}|{level}" for term in BASE_TERMS)

    return np.column_stack(blocks), names


def split_name(name):
    """Split "<term>|<level>" into (term, level); level is None if absent."""
    if "|" in name:
        term, level = name.split("|", 1)
        return term, level
    return name, None
