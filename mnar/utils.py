"""
Shared utility functions used across the estimation modules.
"""

import numpy as np
import pandas as pd
from scipy import stats


def logistic(z):
    """Logistic (sigmoid) CDF: 1 / (1 + exp(-z))."""
    return 1 / (1 + np.exp(-np.clip(z, -500, 500)))


def wald_table(beta, se, names):
    """
    Coefficient table with Wald z-tests and 95% confidence intervals.

    Parameters
    ----------
    beta : ndarray, shape (k,)
        Point estimates.
    se : ndarray, shape (k,)
        Standard errors.
    names : list of str
        Coefficient labels.

    Returns
    -------
    DataFrame indexed by name with columns
        estimate, se, z, p_value, ci_lo, ci_hi
    """
    beta = np.asarray(beta, dtype=float)
    se = np.asarray(se, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = beta / se
    return pd.DataFrame(
        dict(
            estimate=beta,
            se=se,
            z=z,
            p_value=2 * stats.norm.sf(np.abs(z)),
            ci_lo=beta - 1.96 * se,
            ci_hi=beta + 1.96 * se,
        ),
        index=pd.Index(names, name="term"),
    )


def d_to_theta(D):
    """
    Log-Cholesky parameterisation of a 2x2 covariance matrix.

    D = L L',  theta = [log L11, L21, log L22]
    """
    L = np.linalg.cholesky(D)
    return np.array([np.log(L[0, 0]), L[1, 0], np.log(L[1, 1])])


def theta_to_d(theta):
    """Inverse of `d_to_theta`."""
    L = np.array([[np.exp(theta[0]), 0.0],
                  [theta[1], np.exp(theta[2])]])
    return L @ L.T


def stack_by_schedule(data, X, y_col="y", time_col="time",
                      subject_col="subject"):
    """
    Group subjects that share the same visit schedule.

    Subjects with identical observation times share the random-effects
    design Z_i and therefore the marginal covariance V_i, so each block
    only needs one inversion.

    Parameters
    ----------
    data : DataFrame
        Long-format data, one row per (subject, time).
    X : ndarray, shape (n_obs, p)
        Fixed-effects design aligned with the rows of `data`.

    Returns
    -------
    list of dict, one per schedule, with keys:
        times    : visit times, shape (n,)
        Z        : random intercept/slope design, shape (n, 2)
        X        : stacked fixed design, shape (m, n, p)
        y        : stacked outcomes, shape (m, n)
        subjects : subject identifiers, shape (m,)
    """
    subj = data[subject_col].to_numpy()
    t = data[time_col].to_numpy(dtype=float)
    order = np.lexsort((t, subj))
    subj = subj[order]
    t = t[order]
    yv = data[y_col].to_numpy(dtype=float)[order]
    Xs = np.asarray(X, dtype=float)[order]

    ids, starts, counts = np.unique(subj, return_index=True,
                                    return_counts=True)
    schedules = {}
    for sid, s, c in zip(ids, starts, counts):
        schedules.setdefault(tuple(t[s:s + c]), []).append((sid, s, c))

    blocks = []
    for key, members in schedules.items():
        rows = np.array([np.arange(s, s + c) for _, s, c in members])
        times = np.array(key)
        blocks.append(dict(
            times=times,
            Z=np.column_stack([np.ones(len(times)), times]),
            X=Xs[rows],
            y=yv[rows],
            subjects=np.array([sid for sid, _, _ in members]),
        ))
    return blocks
