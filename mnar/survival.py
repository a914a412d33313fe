"""
Dropout-time models: Cox proportional hazards and Weibull PH.

Cox (1972) partial likelihood with Breslow handling of ties:

    l(beta) = sum_{i: d_i=1} [ x_i'beta - log sum_{j in R(t_i)} exp(x_j'beta) ]

fitted by Newton-Raphson with the analytic score and information.
The Weibull PH model

    h(t | x) = (k / lam) (t / lam)^(k-1) exp(x'beta)
    H(t | x) = (t / lam)^k exp(x'beta)

is fitted by full maximum likelihood and supplies the parametric
baseline hazard of the joint model.
"""

import logging

import numpy as np
import pandas as pd

from .mle import fit_mle
from .utils import wald_table

logger = logging.getLogger(__name__)


def _risk_set_sums(beta, time, X):
    """
    Risk-set sums S0, S1, S2 for every observation (Breslow ties).

    Returns arrays aligned with the input order, plus the log of S0
    on the original scale.
    """
    order = np.argsort(-time, kind="mergesort")
    t = time[order]
    Xo = X[order]
    eta = Xo @ beta
    shift = eta.max()
    w = np.exp(eta - shift)

    S0 = np.cumsum(w)
    S1 = np.cumsum(w[:, None] * Xo, axis=0)
    S2 = np.cumsum(w[:, None, None] * Xo[:, :, None] * Xo[:, None, :],
                   axis=0)

    # Tied times share the risk set of the last member of their block
    block = np.r_[0, np.cumsum(np.diff(t) != 0)]
    last = np.r_[np.nonzero(np.diff(t))[0], len(t) - 1]
    idx = last[block]

    inv = np.empty_like(order)
    inv[order] = np.arange(len(order))
    sel = idx[inv]
    return S0[sel], S1[sel], S2[sel], np.log(S0[sel]) + shift


def _cox_derivatives(beta, time, event, X):
    S0, S1, S2, logS0 = _risk_set_sums(beta, time, X)
    d = event == 1
    eta = X @ beta
    loglik = np.sum(eta[d] - logS0[d])
    mean = S1[d] / S0[d][:, None]
    score = np.sum(X[d] - mean, axis=0)
    info = np.sum(S2[d] / S0[d][:, None, None]
                  - mean[:, :, None] * mean[:, None, :], axis=0)
    return loglik, score, info


def fit_cox(time, event, X, names=None, max_iter=50, tol=1e-9):
    """
    Cox proportional hazards model via Newton-Raphson.

    Parameters
    ----------
    time : ndarray, shape (n,)
        Follow-up times.
    event : ndarray, shape (n,)
        Event indicator (1 = event, 0 = censored).
    X : ndarray, shape (n, k)
        Covariates (no intercept column).
    names : list of str or None

    Returns
    -------
    dict with keys:
        beta, se, vcov, names : coefficients and inverse information
        loglik                : partial log-likelihood at optimum
        converged             : bool
        n_iter                : Newton iterations used
        baseline_cumhaz       : Breslow estimate (DataFrame: time, cumhaz)
        concordance           : Harrell's C
    """
    time = np.asarray(time, dtype=float)
    event = np.asarray(event, dtype=int)
    X = np.atleast_2d(np.asarray(X, dtype=float))
    if X.shape[0] != len(time):
        X = X.T
    k = X.shape[1]
    names = names or [f"x{j}" for j in range(k)]
    if event.sum() == 0:
        raise ValueError("Cox model needs at least one event")

    beta = np.zeros(k)
    loglik, score, info = _cox_derivatives(beta, time, event, X)
    converged = False
    for it in range(1, max_iter + 1):
        step = np.linalg.solve(info, score)
        # Step halving keeps the partial likelihood increasing
        for _ in range(30):
            new = _cox_derivatives(beta + step, time, event, X)
            if new[0] >= loglik - 1e-12:
                break
            step = step / 2
        beta = beta + step
        change = new[0] - loglik
        loglik, score, info = new
        if abs(change) < tol and np.max(np.abs(step)) < 1e-6:
            converged = True
            break
    if not converged:
        logger.warning("Cox model did not converge in %d iterations",
                       max_iter)

    vcov = np.linalg.inv(info)
    return dict(
        beta=beta,
        se=np.sqrt(np.diag(vcov)),
        vcov=vcov,
        names=list(names),
        loglik=float(loglik),
        converged=converged,
        n_iter=it,
        baseline_cumhaz=breslow_cumhaz(beta, time, event, X),
        concordance=concordance_index(time, event, X @ beta),
    )


def breslow_cumhaz(beta, time, event, X):
    """
    Breslow estimator of the baseline cumulative hazard.

        Lambda_0(t) = sum_{t_i <= t} d_i / sum_{j in R(t_i)} exp(x_j'beta)
    """
    _, _, _, logS0 = _risk_set_sums(beta, time, X)
    d = event == 1
    jumps = pd.DataFrame(dict(time=time[d], dh=np.exp(-logS0[d])))
    jumps = jumps.groupby("time", as_index=False)["dh"].sum()
    jumps["cumhaz"] = jumps["dh"].cumsum()
    return jumps[["time", "cumhaz"]]


def concordance_index(time, event, risk):
    """
    Harrell's C: share of comparable pairs ordered correctly by risk.

    A pair (i, j) is comparable when t_i < t_j and subject i had the
    event; it is concordant when risk_i > risk_j. Risk ties count 1/2.
    """
    time = np.asarray(time, dtype=float)
    risk = np.asarray(risk, dtype=float)
    d = np.asarray(event) == 1
    comparable = d[:, None] & (time[:, None] < time[None, :])
    diff = risk[:, None] - risk[None, :]
    concordant = np.sum(comparable & (diff > 0))
    tied = np.sum(comparable & (diff == 0))
    n_pairs = np.sum(comparable)
    if n_pairs == 0:
        return np.nan
    return float((concordant + 0.5 * tied) / n_pairs)


# -----------------------------------------------------------------------------
# Weibull PH
# -----------------------------------------------------------------------------

def weibull_loghaz(t, log_shape, log_scale):
    """Log baseline hazard log h0(t) of the Weibull model."""
    k = np.exp(log_shape)
    return log_shape - log_scale + (k - 1) * (np.log(t) - log_scale)


def weibull_cumhaz(t, log_shape, log_scale):
    """Baseline cumulative hazard H0(t) = (t / lam)^k."""
    return np.exp(np.exp(log_shape) * (np.log(t) - log_scale))


def _nll_weibull(params, time, event, X):
    log_shape, log_scale, beta = params[0], params[1], params[2:]
    eta = X @ beta
    loghaz = weibull_loghaz(time, log_shape, log_scale) + eta
    cumhaz = weibull_cumhaz(time, log_shape, log_scale) * np.exp(eta)
    return -np.sum(event * loghaz - cumhaz)


def fit_weibull_ph(time, event, X, names=None):
    """
    Weibull proportional hazards model by maximum likelihood.

    Parameters
    ----------
    time, event : ndarray, shape (n,)
        Follow-up times (must be positive) and event indicators.
    X : ndarray, shape (n, k)
        Covariates (no intercept column).
    names : list of str or None

    Returns
    -------
    dict with keys:
        beta, se, names    : regression coefficients
        shape, scale       : Weibull parameters
        params, vcov       : full parameter vector [log k, log lam, beta]
                             and its covariance
        table              : Wald table for all parameters
        loglik, converged
    """
    time = np.asarray(time, dtype=float)
    event = np.asarray(event, dtype=float)
    X = np.atleast_2d(np.asarray(X, dtype=float))
    if X.shape[0] != len(time):
        X = X.T
    if np.any(time <= 0):
        raise ValueError("Weibull model needs strictly positive times")
    k = X.shape[1]
    names = names or [f"x{j}" for j in range(k)]

    start = np.r_[0.0, np.log(np.mean(time)), np.zeros(k)]
    res = fit_mle(_nll_weibull, start, args=(time, event, X))
    full_names = ["log_shape", "log_scale"] + list(names)

    return dict(
        beta=res["beta"][2:],
        se=res["se"][2:],
        names=list(names),
        shape=float(np.exp(res["beta"][0])),
        scale=float(np.exp(res["beta"][1])),
        params=res["beta"],
        vcov=res["vcov"],
        table=wald_table(res["beta"], res["se"], full_names),
        loglik=-res["nll"],
        converged=res["converged"],
    )
