"""
Shared random-effects joint model for longitudinal outcomes and dropout.

Longitudinal submodel (as in lmm.py):

    y_i(t) = m_i(t) + e_i(t),  m_i(t) = x_i(t)'beta + z_i(t)'b_i,  b_i ~ N(0, D)

Dropout submodel (Weibull PH, Rizopoulos 2012):

    h_i(t) = h0(t) exp(gamma * Tx_i + (alpha + alpha_tx * Tx_i) * a_i(t))

where the association term a_i(t) is either
  "slope" : the true subject-specific slope d m_i(t) / dt
            = beta_time + beta_time:treatment * Tx_i + b1_i
  "value" : the true current value m_i(t)

The association differs by arm: alpha in the control arm and
alpha + alpha_tx under treatment.

Because y_i | b_i and b_i are Gaussian, the marginal likelihood of a
subject factorises exactly as

    L_i = p(y_i) * E_{b | y_i} [ h_i(T_i | b)^delta_i exp(-H_i(T_i | b)) ]

with b | y_i ~ N(mu_i, S_i) in closed form. The expectation is computed
by Gauss-Hermite quadrature centred and scaled on that posterior, which
keeps the number of nodes small. For the "value" association the
cumulative hazard has no closed form and is integrated with
Gauss-Legendre quadrature on (0, T_i).
"""

import logging

import numpy as np
from numpy.polynomial.hermite import hermgauss
from numpy.polynomial.legendre import leggauss
from scipy.special import logsumexp

from .design import longitudinal_design
from .lmm import block_moments, fit_lmm, subject_slopes
from .mle import fit_mle
from .survival import fit_weibull_ph, weibull_cumhaz, weibull_loghaz
from .utils import d_to_theta, theta_to_d, stack_by_schedule, wald_table

logger = logging.getLogger(__name__)

PARAMETERIZATIONS = ("slope", "value")
N_GH = 7
N_GL = 15


def gauss_hermite_grid(n_gh):
    """
    Bivariate Gauss-Hermite nodes for E[f(b)], b ~ N(0, I_2).

    Returns nodes of shape (n_gh^2, 2) already scaled by sqrt(2) and
    log-weights normalised by pi.
    """
    x, w = hermgauss(n_gh)
    X1, X2 = np.meshgrid(x, x, indexing="ij")
    W = np.outer(w, w).ravel() / np.pi
    return np.sqrt(2) * np.column_stack([X1.ravel(), X2.ravel()]), np.log(W)


def _attach_survival(blocks, subjects):
    """Add per-subject event time, event indicator and arm to each block."""
    surv = subjects.set_index("subject")
    for b in blocks:
        s = surv.loc[b["subjects"]]
        b["event_time"] = s["event_time"].to_numpy(dtype=float)
        b["event"] = s["event"].to_numpy(dtype=float)
        b["tx"] = s["treatment"].to_numpy(dtype=float)
    return blocks


def _unpack(params, p):
    beta = params[:p]
    D = theta_to_d(params[p:p + 3])
    sigma2 = np.exp(2 * params[p + 3])
    log_shape, log_scale, gamma, alpha, alpha_tx = params[p + 4:p + 9]
    return beta, D, sigma2, log_shape, log_scale, gamma, alpha, alpha_tx


def _survival_loglik(b, beta, idx, blk, log_shape, log_scale, gamma, alpha,
                     alpha_tx, parameterization, gl):
    """log f(T_i, delta_i | b) for every subject and quadrature node."""
    T = blk["event_time"][:, None]
    tx = blk["tx"][:, None]
    slope = beta[idx["time"]] + beta[idx["time:treatment"]] * tx + b[..., 1]
    assoc = alpha + alpha_tx * tx

    if parameterization == "slope":
        lp = gamma * tx + assoc * slope
        loghaz = weibull_loghaz(T, log_shape, log_scale) + lp
        cumhaz = weibull_cumhaz(T, log_shape, log_scale) * np.exp(lp)
    else:
        level = beta[idx["Intercept"]] + beta[idx["treatment"]] * tx + b[..., 0]
        loghaz = (weibull_loghaz(T, log_shape, log_scale) + gamma * tx
                  + assoc * (level + slope * T))
        # Gauss-Legendre on (0, T): nodes s = T (x + 1) / 2
        x, w = gl
        s = T[..., None] * (x + 1) / 2
        integrand = np.exp(weibull_loghaz(s, log_shape, log_scale)
                           + gamma * tx[..., None]
                           + assoc[..., None] * (level[..., None]
                                                 + slope[..., None] * s))
        cumhaz = T * np.sum(integrand * w, axis=-1) / 2

    return blk["event"][:, None] * loghaz - cumhaz


def _neg_loglik(params, blocks, p, idx, parameterization, nodes, logw, gl):
    beta, D, sigma2, log_shape, log_scale, gamma, alpha, alpha_tx = _unpack(
        params, p)
    total = 0.0
    try:
        for blk in blocks:
            ll_y, mu, S = block_moments(blk, beta, D, sigma2)
            C = np.linalg.cholesky(S)
            b = mu[:, None, :] + (nodes @ C.T)[None, :, :]
            ll_t = _survival_loglik(b, beta, idx, blk, log_shape, log_scale,
                                    gamma, alpha, alpha_tx, parameterization,
                                    gl)
            total += np.sum(ll_y + logsumexp(ll_t + logw, axis=1))
    except np.linalg.LinAlgError:
        return np.inf
    if not np.isfinite(total):
        return np.inf
    return -total


def fit_joint(data, subjects, parameterization="slope", n_gh=N_GH,
              start=None, hessian=True):
    """
    Fit the joint longitudinal / dropout model by maximum likelihood.

    Parameters
    ----------
    data : DataFrame
        Observed long data (subject, time, treatment, y).
    subjects : DataFrame
        Subject-level frame with event_time, event and treatment.
    parameterization : {"slope", "value"}
        Which feature of the true trajectory drives the dropout hazard.
    n_gh : int
        Gauss-Hermite nodes per random-effect dimension.
    start : ndarray or None
        Starting values; defaults to an ML LMM fit plus a two-stage
        Weibull fit on the empirical Bayes slopes.
    hessian : bool
        Compute standard errors from the observed information.

    Returns
    -------
    dict with keys:
        beta, se, vcov, names : longitudinal fixed effects
        gamma                 : treatment effect on dropout
        alpha, alpha_treatment: association in the control arm and its
                                change under treatment
        shape, scale          : Weibull baseline hazard
        D, sigma2             : variance components
        survival              : Wald table of the dropout submodel
        params, vcov_full     : all parameters and their covariance
        loglik, converged, parameterization
    """
    if parameterization not in PARAMETERIZATIONS:
        raise ValueError(
            f"unknown parameterization {parameterization!r}; "
            f"expected one of {PARAMETERIZATIONS}"
        )
    X, names = longitudinal_design(data)
    p = len(names)
    idx = {name: i for i, name in enumerate(names)}
    blocks = _attach_survival(stack_by_schedule(data, X), subjects)
    nodes, logw = gauss_hermite_grid(n_gh)
    gl = leggauss(N_GL)

    if start is None:
        start = _start_values(data, subjects, parameterization)

    args = (blocks, p, idx, parameterization, nodes, logw, gl)
    res = fit_mle(_neg_loglik, start, args=args, method="L-BFGS-B",
                  hessian=hessian)
    beta, D, sigma2, log_shape, log_scale, gamma, alpha, alpha_tx = _unpack(
        res["beta"], p)

    surv_names = ["log_shape", "log_scale", "treatment", "alpha",
                  "alpha:treatment"]
    surv_slice = slice(p + 4, p + 9)
    full_names = names + ["theta_D1", "theta_D2", "theta_D3",
                          "log_sigma"] + surv_names
    logger.info("joint model (%s): loglik=%.2f alpha=%.3f alpha_tx=%.3f "
                "converged=%s", parameterization, -res["nll"], alpha, alpha_tx,
                res["converged"])

    return dict(
        beta=beta,
        se=res["se"][:p],
        vcov=res["vcov"][:p, :p],
        names=names,
        gamma=float(gamma),
        alpha=float(alpha),
        alpha_treatment=float(alpha_tx),
        shape=float(np.exp(log_shape)),
        scale=float(np.exp(log_scale)),
        D=D,
        sigma2=float(sigma2),
        survival=wald_table(res["beta"][surv_slice], res["se"][surv_slice],
                            surv_names),
        params=res["beta"],
        param_names=full_names,
        vcov_full=res["vcov"],
        loglik=-res["nll"],
        converged=res["converged"],
        parameterization=parameterization,
        pattern=None,
        pattern_levels=None,
    )


def _start_values(data, subjects, parameterization):
    """ML LMM for the outcome, then a Weibull fit on empirical Bayes slopes."""
    lmm = fit_lmm(data, reml=False)
    slopes = subject_slopes(lmm, subjects).to_numpy()
    tx = subjects["treatment"].to_numpy(dtype=float)
    time = subjects["event_time"].to_numpy(dtype=float)
    event = subjects["event"].to_numpy(dtype=float)

    if parameterization == "slope":
        wb = fit_weibull_ph(time, event,
                            np.column_stack([tx, slopes, tx * slopes]),
                            names=["treatment", "alpha", "alpha:treatment"])
        surv = wb["params"]
    else:
        wb = fit_weibull_ph(time, event, tx[:, None], names=["treatment"])
        surv = np.r_[wb["params"], 0.0, 0.0]

    return np.r_[lmm["beta"], d_to_theta(lmm["D"]),
                 0.5 * np.log(lmm["sigma2"]), surv]
