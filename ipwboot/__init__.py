import logging

from ._assumptions import Assumption
from ._exceptions import FitFailureError, InvalidInputError, MissingTermError
from .aggregate import EstimateDistribution, aggregate
from .config import BootstrapConfig, FailurePolicy
from .estimators import (
    OutcomeFit, PropensityFit, Term, WeightKind,
    compute_weight, compute_weights, fit_outcome, fit_propensity,
)
from .pipeline import (
    IPWBootstrap, IPWResult, PipelineState, ResampleFailure, RunStatus,
    prepare_dataset, run_pipeline,
)
from .resampling import APPARENT, Resample, iter_resamples, resample

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "IPWBootstrap", "IPWResult", "run_pipeline", "prepare_dataset",
    "PipelineState", "RunStatus", "ResampleFailure",
    "BootstrapConfig", "FailurePolicy", "WeightKind",
    "Resample", "APPARENT", "resample", "iter_resamples",
    "PropensityFit", "fit_propensity",
    "compute_weight", "compute_weights",
    "OutcomeFit", "Term", "fit_outcome",
    "EstimateDistribution", "aggregate",
    "Assumption",
    "InvalidInputError", "FitFailureError", "MissingTermError",
]
