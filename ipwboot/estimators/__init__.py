from .propensity import PropensityFit, fit_propensity
from .weights import WeightKind, compute_weight, compute_weights
from .outcome import OutcomeFit, Term, fit_outcome

__all__ = [
    "PropensityFit", "fit_propensity",
    "WeightKind", "compute_weight", "compute_weights",
    "OutcomeFit", "Term", "fit_outcome",
]
