"""
Dropout-pattern indicators for pattern-mixture models.

A pattern groups subjects by *when* (or whether) they left the study.
Only information observed at the end of the trial is used: the
dropout indicator and the dropout time.
"""

import numpy as np
import pandas as pd

PATTERN_KINDS = ("binary", "early_late")


def add_pattern(data, kind="binary", cutoff=None, col="pattern"):
    """
    Attach a dropout-pattern column to long-format data.

    Parameters
    ----------
    data : DataFrame
        Long data with `dropout` and `dropout_time` columns.
    kind : {"binary", "early_late"}
        binary     -> completer / dropout
        early_late -> completer / late / early, split at `cutoff`
    cutoff : float or None
        Dropout time separating early from late dropouts. Defaults to
        the median dropout time among dropouts.
    col : str
        Name of the new column.

    Returns
    -------
    DataFrame
        Copy of `data` with an ordered categorical pattern column whose
        first (reference) level is "completer".
    """
    if kind not in PATTERN_KINDS:
        raise ValueError(
            f"unknown pattern kind {kind!r}; expected one of {PATTERN_KINDS}"
        )
    data = data.copy()
    dropped = data["dropout"].to_numpy() == 1

    if kind == "binary":
        labels = np.where(dropped, "dropout", "completer")
        categories = ["completer", "dropout"]
    else:
        if cutoff is None:
            per_subject = data.loc[dropped].drop_duplicates("subject")
            cutoff = (per_subject["dropout_time"].median()
                      if len(per_subject) else np.inf)
        early = data["dropout_time"].to_numpy() <= cutoff
        labels = np.where(~dropped, "completer",
                          np.where(early, "early", "late"))
        categories = ["completer", "late", "early"]

    data[col] = pd.Categorical(labels, categories=categories, ordered=True)
    return data


def pattern_proportions(data, by_group=True, col="pattern",
                        group_col="treatment"):
    """
    Subject-level share of each dropout pattern.

    Parameters
    ----------
    by_group : bool
        If True, proportions are computed within each arm
        (rows = arm, columns = pattern, rows sum to one).
        If False, a Series of pooled proportions is returned.

    Returns
    -------
    DataFrame or Series
        Only patterns that occur in the data are included.
    """
    subjects = data.drop_duplicates("subject")
    pattern = subjects[col]
    if isinstance(pattern.dtype, pd.CategoricalDtype):
        pattern = pattern.cat.remove_unused_categories()
    if by_group:
        return pd.crosstab(subjects[group_col], pattern, normalize="index")
    return pattern.value_counts(normalize=True, sort=False)
