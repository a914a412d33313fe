"""
Linear mixed-effects model with random intercepts and slopes.

    y_i = X_i beta + Z_i b_i + e_i,   b_i ~ N(0, D),   e_i ~ N(0, sigma^2 I)

so that marginally y_i ~ N(X_i beta, V_i) with V_i = Z_i D Z_i' + sigma^2 I.

Estimation profiles beta out of the likelihood (GLS given D, sigma^2)
and optimizes the remaining four variance parameters:

    -2 l_ML   = sum_i [ log|V_i| + r_i' V_i^{-1} r_i ] + N log(2 pi)
    -2 l_REML = -2 l_ML + log| sum_i X_i' V_i^{-1} X_i | - p log(2 pi)

D is parameterised by its log-Cholesky factor and sigma by its log, so
the optimization is unconstrained. Under MAR dropout the likelihood is
ignorable and these estimates remain valid; under MNAR they are not.
"""

import logging

import numpy as np
import pandas as pd
from scipy.optimize import minimize

from .design import longitudinal_design, pattern_levels
from .utils import d_to_theta, theta_to_d, stack_by_schedule, wald_table

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2 * np.pi)


def _unpack(theta):
    return theta_to_d(theta[:3]), float(np.exp(2 * theta[3]))


def marginal_covariance(Z, D, sigma2):
    """V = Z D Z' + sigma^2 I and its inverse and log-determinant."""
    V = Z @ D @ Z.T + sigma2 * np.eye(Z.shape[0])
    Vinv = np.linalg.inv(V)
    logdet = np.linalg.slogdet(V)[1]
    return V, Vinv, logdet


def _gls(blocks, D, sigma2):
    """Profiled beta and the block-level pieces of the likelihood."""
    p = blocks[0]["X"].shape[2]
    XtVX = np.zeros((p, p))
    XtVy = np.zeros(p)
    logdet = 0.0
    inverses = []
    for b in blocks:
        _, Vinv, ld = marginal_covariance(b["Z"], D, sigma2)
        XtVX += np.einsum("mip,ij,mjq->pq", b["X"], Vinv, b["X"])
        XtVy += np.einsum("mip,ij,mj->p", b["X"], Vinv, b["y"])
        logdet += b["X"].shape[0] * ld
        inverses.append(Vinv)
    beta = np.linalg.solve(XtVX, XtVy)
    return beta, XtVX, logdet, inverses


def _neg_loglik(theta, blocks, n_obs, reml):
    D, sigma2 = _unpack(theta)
    try:
        beta, XtVX, logdet, inverses = _gls(blocks, D, sigma2)
    except np.linalg.LinAlgError:
        return np.inf
    quad = 0.0
    for b, Vinv in zip(blocks, inverses):
        r = b["y"] - b["X"] @ beta
        quad += np.einsum("mi,ij,mj->", r, Vinv, r)
    m2ll = n_obs * LOG_2PI + logdet + quad
    if reml:
        p = len(beta)
        m2ll += np.linalg.slogdet(XtVX)[1] - p * LOG_2PI
    return 0.5 * m2ll


def _start_values(blocks):
    """Moment-based starting values from pooled OLS residuals."""
    X = np.concatenate([b["X"].reshape(-1, b["X"].shape[2]) for b in blocks])
    y = np.concatenate([b["y"].ravel() for b in blocks])
    t = np.concatenate([np.tile(b["times"], b["y"].shape[0]) for b in blocks])
    coef = np.linalg.lstsq(X, y, rcond=None)[0]
    s2 = np.var(y - X @ coef)
    var_t = max(np.var(t), 1.0)
    D0 = np.diag([s2 / 2, 0.1 * s2 / var_t])
    return np.r_[d_to_theta(D0), 0.5 * np.log(s2 / 2)]


def fit_lmm(data, pattern=None, reml=True, y_col="y", start=None):
    """
    Fit the random intercept and slope model.

    Parameters
    ----------
    data : DataFrame
        Long data with subject, time, treatment and outcome columns.
    pattern : str or None
        Dropout-pattern column; if given, the fixed effects are
        stratified by pattern (see design.longitudinal_design).
    reml : bool
        REML (default) or ML estimation.
    y_col : str
        Outcome column.
    start : ndarray or None
        Starting values for [log-Cholesky(D), log sigma].

    Returns
    -------
    dict with keys:
        beta, se, vcov, names : fixed effects and model-based covariance
        D, sigma2             : variance components
        theta                 : optimizer parameters
        loglik                : (restricted) log-likelihood at optimum
        reml, converged       : flags
        n_obs, n_subjects     : sample sizes
        random_effects        : BLUPs (DataFrame indexed by subject)
        pattern, pattern_levels
    """
    X, names = longitudinal_design(data, pattern=pattern)
    blocks = stack_by_schedule(data, X, y_col=y_col)
    n_obs = len(data)

    if start is None:
        start = _start_values(blocks)
    res = minimize(_neg_loglik, start, args=(blocks, n_obs, reml),
                   method="L-BFGS-B")
    if not res.success:
        logger.warning("LMM optimizer did not converge: %s", res.message)

    D, sigma2 = _unpack(res.x)
    beta, XtVX, _, inverses = _gls(blocks, D, sigma2)
    vcov = np.linalg.inv(XtVX)

    blups = []
    for b, Vinv in zip(blocks, inverses):
        r = b["y"] - b["X"] @ beta
        blups.append(pd.DataFrame(r @ Vinv @ b["Z"] @ D,
                                  index=b["subjects"],
                                  columns=["b0", "b1"]))
    random_effects = pd.concat(blups).sort_index()
    random_effects.index.name = "subject"

    return dict(
        beta=beta,
        se=np.sqrt(np.diag(vcov)),
        vcov=vcov,
        names=names,
        D=D,
        sigma2=sigma2,
        theta=res.x,
        loglik=-float(res.fun),
        reml=reml,
        converged=bool(res.success),
        n_obs=n_obs,
        n_subjects=len(random_effects),
        random_effects=random_effects,
        pattern=pattern,
        pattern_levels=(pattern_levels(data, pattern)
                        if pattern is not None else None),
    )


def block_moments(block, beta, D, sigma2):
    """
    Marginal log-density and posterior of b_i given y_i for one block.

    For every subject in a schedule block:

        log p(y_i) = -0.5 [ n log(2 pi) + log|V| + r_i' V^{-1} r_i ]
        b_i | y_i  ~ N( S Z' r_i / sigma^2,  S ),
        S = (D^{-1} + Z'Z / sigma^2)^{-1}

    Returns
    -------
    loglik : ndarray, shape (m,)
    mean   : ndarray, shape (m, 2)
    cov    : ndarray, shape (2, 2), shared by the block
    """
    Z = block["Z"]
    _, Vinv, logdet = marginal_covariance(Z, D, sigma2)
    r = block["y"] - block["X"] @ beta
    quad = np.einsum("mi,ij,mj->m", r, Vinv, r)
    loglik = -0.5 * (Z.shape[0] * LOG_2PI + logdet + quad)
    S = np.linalg.inv(np.linalg.inv(D) + Z.T @ Z / sigma2)
    mean = r @ Z @ S / sigma2
    return loglik, mean, S


def posterior_random_effects(fit, data, y_col="y"):
    """
    Posterior means and covariances of the random effects.

    Returns
    -------
    mean : DataFrame indexed by subject (b0, b1)
    cov  : dict subject -> (2, 2) ndarray
    """
    X, _ = longitudinal_design(data, pattern=fit["pattern"])
    blocks = stack_by_schedule(data, X, y_col=y_col)
    means, covs = [], {}
    for b in blocks:
        _, mean, S = block_moments(b, fit["beta"], fit["D"], fit["sigma2"])
        means.append(pd.DataFrame(mean, index=b["subjects"],
                                  columns=["b0", "b1"]))
        covs.update({sid: S for sid in b["subjects"]})
    out = pd.concat(means).sort_index()
    out.index.name = "subject"
    return out, covs


def coef_table(fit):
    """Fixed-effects table: estimate, se, z, p_value, 95% CI."""
    return wald_table(fit["beta"], fit["se"], fit["names"])


def subject_slopes(fit, subjects):
    """
    Subject-specific slopes beta_time + beta_time:treatment * Tx + b1_hat.

    Only valid for fits without pattern stratification.
    """
    if fit["pattern"] is not None:
        raise ValueError("subject slopes need a fit without patterns")
    idx = {name: i for i, name in enumerate(fit["names"])}
    tx = subjects.set_index("subject")["treatment"]
    b1 = fit["random_effects"]["b1"].reindex(tx.index)
    return (fit["beta"][idx["time"]]
            + fit["beta"][idx["time:treatment"]] * tx + b1)
