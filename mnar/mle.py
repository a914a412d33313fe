"""
Maximum likelihood machinery shared by the survival and joint models.

Wraps scipy.optimize.minimize and computes standard errors from the
observed information (numerical Hessian of the negative log-likelihood).
"""

import logging

import numpy as np
from scipy.optimize import minimize

logger = logging.getLogger(__name__)


def fit_mle(neg_log_lik, start, args=(), method="BFGS", hessian=True,
            options=None):
    """
    Generic MLE via scipy.optimize.minimize.

    Parameters
    ----------
    neg_log_lik : callable
        Negative log-likelihood function: f(params, *args) -> float.
    start : ndarray
        Starting parameter values.
    args : tuple
        Extra arguments passed to neg_log_lik.
    method : str
        Optimization method (default BFGS).
    hessian : bool
        If True, compute the observed information and standard errors.
    options : dict or None
        Passed through to the optimizer.

    Returns
    -------
    dict with keys:
        beta      : MLE estimates
        se        : standard errors from observed Fisher info (NaN if
                    the Hessian is singular or not positive definite)
        vcov      : inverse Hessian
        nll       : negative log-likelihood at optimum
        hessian   : numerical Hessian at the MLE (None if not requested)
        converged : bool
        message   : optimizer message
    """
    res = minimize(neg_log_lik, np.asarray(start, dtype=float), args=args,
                   method=method, options=options)
    if not res.success:
        logger.warning("optimizer did not converge (%s): %s",
                       method, res.message)

    k = len(res.x)
    H = None
    vcov = np.full((k, k), np.nan)
    if hessian:
        H = numerical_hessian(neg_log_lik, res.x, args=args)
        vcov = invert_information(H)

    return dict(
        beta=res.x,
        se=np.sqrt(np.diag(vcov)),
        vcov=vcov,
        nll=float(res.fun),
        hessian=H,
        converged=bool(res.success),
        message=str(res.message),
    )


def numerical_hessian(f, x, args=(), eps=1e-4):
    """
    Central-difference Hessian of a scalar function.

        H_ij ~ [f(x+h_i+h_j) - f(x+h_i-h_j) - f(x-h_i+h_j) + f(x-h_i-h_j)]
               / (4 h_i h_j)

    with relative steps h_i = eps * max(|x_i|, 1).

    Returns
    -------
    H : ndarray, shape (k, k)
    """
    x = np.asarray(x, dtype=float)
    k = len(x)
    h = eps * np.maximum(np.abs(x), 1.0)
    H = np.empty((k, k))
    for i in range(k):
        ei = np.zeros(k)
        ei[i] = h[i]
        for j in range(i, k):
            ej = np.zeros(k)
            ej[j] = h[j]
            H[i, j] = (f(x + ei + ej, *args) - f(x + ei - ej, *args)
                       - f(x - ei + ej, *args) + f(x - ei - ej, *args)
                       ) / (4 * h[i] * h[j])
            H[j, i] = H[i, j]
    return H


def invert_information(H):
    """
    Covariance matrix from an observed information matrix.

    Returns a NaN matrix when H is singular or the inverse has a
    non-positive diagonal.
    """
    k = H.shape[0]
    try:
        V = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        logger.warning("singular information matrix; SEs set to NaN")
        return np.full((k, k), np.nan)
    if not np.all(np.isfinite(V)) or np.any(np.diag(V) <= 0):
        logger.warning("information matrix not positive definite; "
                       "SEs set to NaN")
        return np.full((k, k), np.nan)
    return V
