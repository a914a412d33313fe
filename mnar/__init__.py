"""
mnar -- linear mixed models under missing-not-at-random dropout.

Simulates longitudinal trials whose dropout depends on the subjects'
random slopes, and implements the competing analyses from scratch on
numpy / scipy: the LMM, pattern-mixture models, Cox and Weibull
dropout models, and a shared random-effects joint model.
"""

from .simulate import SimulationParams, simulate_dataset
from .lmm import fit_lmm, coef_table
from .contrasts import slope_difference, marginal_slopes, marginal_means
from .pattern_mixture import fit_pattern_mixture
from .joint import fit_joint
from .compare import fit_all_models
from . import simulate
from . import patterns
from . import lmm
from . import contrasts
from . import pattern_mixture
from . import survival
from . import joint
from . import compare
from . import montecarlo
