"""
Synthetic longitudinal trials with informative dropout.

Data-generating process (two arms, n_time equally spaced visits):

    (u0_i, u1_i) ~ MVN(0, D)
    y_ij = beta0 + beta_time * t_j + beta_treatment * Tx_i
           + beta_time_treatment * t_j * Tx_i + u0_i + u1_i * t_j + e_ij
    e_ij ~ N(0, sigma^2)

Dropout mechanisms
------------------
MCAR : every subject drops out with the same probability.
MAR  : at each visit, dropout depends on the last *observed* outcome.
MNAR : the probability of dropping out depends on the subject's own
       random slope u1_i, with an arm-specific loading:

           P(dropout_i) = logistic(a + lambda_Tx * u1_i / sd_u1)

       With lambda_control < 0 and lambda_treatment > 0 (higher outcomes
       are worse), controls who improve and treated subjects who
       deteriorate leave the study. The control arm loses its
       improvers and the treatment arm its deteriorators, which
       exaggerates the apparent benefit of treatment.

       The size of the bias grows with |lambda|. The defaults (+/-1.5)
       give a moderate bias in the observed-data slope difference;
       stronger loadings select the completers more sharply.

Dropout is monotone: observations at or after a subject's dropout time
are removed, and the baseline visit is always kept.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .utils import logistic

logger = logging.getLogger(__name__)

MECHANISMS = ("complete", "mcar", "mar", "mnar")


@dataclass
class SimulationParams:
    """Parameters of the data-generating process."""

    n_per_group: int = 150
    n_time: int = 11
    beta0: float = 10.0
    beta_time: float = 0.0
    beta_treatment: float = 0.0
    beta_time_treatment: float = -0.25
    sd_u0: float = float(np.sqrt(10.0))
    sd_u1: float = float(np.sqrt(0.2))
    cor_u: float = -0.5
    sigma: float = float(np.sqrt(10.0))
    # MNAR: logistic model on the standardised random slope
    dropout_intercept: float = 0.0
    dropout_slope_control: float = -1.5
    dropout_slope_treatment: float = 1.5
    # MCAR: constant probability
    mcar_rate: float = 0.5
    # MAR: per-visit hazard on the last observed outcome (centred at beta0)
    mar_intercept: float = -2.5
    mar_outcome: float = 0.3

    def validate(self):
        if self.n_per_group < 1:
            raise ValueError("n_per_group must be at least 1")
        if self.n_time < 2:
            raise ValueError("n_time must be at least 2 to identify slopes")
        if self.sd_u0 <= 0 or self.sd_u1 <= 0 or self.sigma <= 0:
            raise ValueError("standard deviations must be positive")
        if abs(self.cor_u) >= 1:
            raise ValueError("cor_u must lie strictly between -1 and 1")
        if not 0 <= self.mcar_rate <= 1:
            raise ValueError("mcar_rate must be a probability")

    @property
    def t_max(self):
        return float(self.n_time - 1)

    @property
    def D(self):
        """Random-effects covariance matrix."""
        c = self.cor_u * self.sd_u0 * self.sd_u1
        return np.array([[self.sd_u0 ** 2, c], [c, self.sd_u1 ** 2]])

    @property
    def true_slope_difference(self):
        return self.beta_time_treatment


def simulate_complete(params=None, seed=None):
    """
    Draw a complete (no dropout) longitudinal dataset.

    Parameters
    ----------
    params : SimulationParams or None
        Defaults to SimulationParams().
    seed : int or None
        Random seed.

    Returns
    -------
    dict with keys:
        data     : long DataFrame (subject, time, treatment, y,
                   dropout, dropout_time)
        subjects : subject-level DataFrame (treatment, u0, u1, ...)
        params   : the SimulationParams used
    """
    params = params or SimulationParams()
    params.validate()
    if seed is not None:
        np.random.seed(seed)

    n_sub = 2 * params.n_per_group
    times = np.arange(params.n_time, dtype=float)
    treatment = np.repeat([0, 1], params.n_per_group)
    u = np.random.multivariate_normal(np.zeros(2), params.D, size=n_sub)

    subject = np.repeat(np.arange(n_sub), params.n_time)
    t = np.tile(times, n_sub)
    tx = np.repeat(treatment, params.n_time)
    y = (params.beta0
         + params.beta_time * t
         + params.beta_treatment * tx
         + params.beta_time_treatment * t * tx
         + np.repeat(u[:, 0], params.n_time)
         + np.repeat(u[:, 1], params.n_time) * t
         + np.random.normal(0, params.sigma, len(t)))

    data = pd.DataFrame(dict(subject=subject, time=t, treatment=tx, y=y))
    subjects = pd.DataFrame(dict(
        subject=np.arange(n_sub), treatment=treatment,
        u0=u[:, 0], u1=u[:, 1],
    ))
    return _with_dropout(dict(data=data, subjects=subjects, params=params),
                         np.full(n_sub, np.inf))


def _with_dropout(dataset, dropout_time):
    """Truncate at the per-subject dropout times and attach indicators."""
    params = dataset["params"]
    subjects = dataset["subjects"].copy()
    subjects["dropout_time"] = dropout_time
    subjects["dropout"] = np.isfinite(dropout_time).astype(int)

    full = dataset.get("data_complete", dataset["data"])
    full = full.drop(columns=["dropout", "dropout_time"], errors="ignore")
    dt = np.repeat(dropout_time, params.n_time)
    keep = (full["time"].to_numpy() < dt) | (full["time"].to_numpy() == 0)

    full = full.assign(dropout=np.repeat(subjects["dropout"].to_numpy(),
                                         params.n_time),
                       dropout_time=dt)
    data = full[keep].reset_index(drop=True)

    last = data.groupby("subject")["time"].max()
    subjects["last_time"] = last.reindex(subjects["subject"]).to_numpy()
    subjects = survival_frame(subjects, params.t_max)

    out = dict(dataset)
    out.update(data=data, data_complete=full, subjects=subjects)
    return out


def survival_frame(subjects, t_max):
    """
    Add dropout-time survival columns to a subject-level frame.

    event_time = min(dropout_time, t_max); event = 1 for dropouts,
    0 for completers (administratively censored at the last visit).
    """
    subjects = subjects.copy()
    subjects["event_time"] = np.minimum(subjects["dropout_time"], t_max)
    subjects["event"] = subjects["dropout"].astype(int)
    return subjects


def apply_mnar_dropout(dataset, seed=None):
    """
    Random-slope-dependent (MNAR) dropout.

    P(dropout_i) = logistic(a + lambda_arm * u1_i / sd_u1); dropouts
    leave at a time drawn uniformly on (0, t_max].
    """
    params = dataset["params"]
    if seed is not None:
        np.random.seed(seed)
    subjects = dataset["subjects"]
    tx = subjects["treatment"].to_numpy()
    loading = np.where(tx == 1, params.dropout_slope_treatment,
                       params.dropout_slope_control)
    p = logistic(params.dropout_intercept
                 + loading * subjects["u1"].to_numpy() / params.sd_u1)
    drop = np.random.uniform(size=len(p)) < p
    when = params.t_max * (1 - np.random.uniform(size=len(p)))
    logger.debug("MNAR dropout: %d of %d subjects", drop.sum(), len(p))
    return _with_dropout(dataset, np.where(drop, when, np.inf))


def apply_mcar_dropout(dataset, seed=None):
    """Dropout with constant probability, independent of all data."""
    params = dataset["params"]
    if seed is not None:
        np.random.seed(seed)
    n = len(dataset["subjects"])
    drop = np.random.uniform(size=n) < params.mcar_rate
    when = params.t_max * (1 - np.random.uniform(size=n))
    return _with_dropout(dataset, np.where(drop, when, np.inf))


def apply_mar_dropout(dataset, seed=None):
    """
    Visit-wise dropout driven by the last observed outcome.

    Before visit t (t >= 1) a subject still in the study leaves with
    probability logistic(c0 + c1 * (y_{t-1} - beta0)); the dropout time
    is drawn uniformly within (t-1, t].
    """
    params = dataset["params"]
    if seed is not None:
        np.random.seed(seed)
    full = dataset.get("data_complete", dataset["data"])
    Y = full.sort_values(["subject", "time"])["y"].to_numpy().reshape(
        -1, params.n_time)
    n = Y.shape[0]
    dropout_time = np.full(n, np.inf)
    active = np.ones(n, dtype=bool)
    for t in range(1, params.n_time):
        p = logistic(params.mar_intercept
                     + params.mar_outcome * (Y[:, t - 1] - params.beta0))
        leave = active & (np.random.uniform(size=n) < p)
        dropout_time[leave] = t - np.random.uniform(size=leave.sum())
        active &= ~leave
    return _with_dropout(dataset, dropout_time)


_DROPOUT = dict(
    mcar=apply_mcar_dropout,
    mar=apply_mar_dropout,
    mnar=apply_mnar_dropout,
)


def simulate_dataset(params=None, mechanism="mnar", seed=None):
    """
    Simulate one trial and apply a dropout mechanism.

    Parameters
    ----------
    params : SimulationParams or None
    mechanism : {"complete", "mcar", "mar", "mnar"}
    seed : int or None

    Returns
    -------
    dict with keys:
        data          : observed long data after dropout
        data_complete : the same trial without dropout
        subjects      : subject-level frame with random effects and
                        survival columns (event_time, event)
        params        : SimulationParams
        mechanism     : str
    """
    if mechanism not in MECHANISMS:
        raise ValueError(
            f"unknown dropout mechanism {mechanism!r}; "
            f"expected one of {MECHANISMS}"
        )
    dataset = simulate_complete(params, seed=seed)
    if mechanism != "complete":
        dataset = _DROPOUT[mechanism](dataset)
    dataset["mechanism"] = mechanism
    return dataset
