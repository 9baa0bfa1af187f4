from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from .._exceptions import FitFailureError, InvalidInputError

logger = logging.getLogger(__name__)

DEFAULT_PROPENSITY_CLIP = 0.01
"""Fitted scores are clipped to ``[clip, 1 - clip]`` before weighting."""

_MAXITER = 100


@dataclass(frozen=True)
class PropensityFit:
    """
    Fitted treatment probabilities for one resample.

    ``scores`` are aligned with the resample's row order and already clipped
    to ``[clip, 1 - clip]``. Only these numbers are kept; the statsmodels
    result is discarded once they are extracted.
    """

    resample_id: int | str | None
    scores: np.ndarray = field(repr=False)
    clip: float
    converged: bool
    n_iterations: int | None = None

    def __len__(self) -> int:
        return len(self.scores)


def _formula(treatment: str, covariates: Sequence[str]) -> str:
    rhs = " + ".join(covariates) if covariates else "1"
    return f"{treatment} ~ {rhs}"


def fit_propensity(
    resample,
    treatment: str,
    covariates: Sequence[str],
    clip: float = DEFAULT_PROPENSITY_CLIP,
) -> PropensityFit:
    """
    Fit a logistic regression of ``treatment`` on ``covariates`` and return
    one clipped propensity score per record.

    Parameters
    ----------
    resample : Resample
        The records to fit on. Scores come back in the same order.
    treatment : str
        Binary (0/1) treatment column.
    covariates : sequence of str
        Predictors of treatment assignment. Empty means intercept-only: every
        record gets the treatment base rate.
    clip : float
        Clipping threshold, in (0, 0.5).

    Raises
    ------
    ``FitFailureError``
        If treatment takes a single value in this resample, the classes are
        perfectly separated, or the optimiser does not converge.
    ``InvalidInputError``
        If ``clip`` is outside (0, 0.5) or treatment is not binary.
    """
    if not 0.0 < clip < 0.5:
        raise InvalidInputError(f"Propensity clip must lie in (0, 0.5), got {clip!r}.")

    rid = resample.resample_id
    data = resample.data
    covariates = list(covariates)
    if len(data) == 0:
        raise InvalidInputError("Cannot fit a propensity model on an empty resample.")
    t = data[treatment].to_numpy(dtype=float)

    if not np.all((t == 0.0) | (t == 1.0)):
        raise InvalidInputError(f"Treatment '{treatment}' must be binary (0/1).")
    if t.min() == t.max():
        raise FitFailureError(
            f"Treatment '{treatment}' takes the single value {t[0]:g} in this "
            f"resample; treatment probabilities are not identified.",
            stage="propensity", resample_id=rid,
        )

    model = smf.logit(_formula(treatment, covariates), data=data)
    # Raise instead of warning so separation cannot pass as a fitted model.
    model.raise_on_perfect_prediction = True
    try:
        result = model.fit(disp=0, method="newton", maxiter=_MAXITER)
    except (PerfectSeparationError, np.linalg.LinAlgError) as exc:
        raise FitFailureError(
            f"Propensity model failed to fit: {exc}",
            stage="propensity", resample_id=rid,
        ) from exc

    retvals = result.mle_retvals or {}
    if not retvals.get("converged", True):
        raise FitFailureError(
            f"Propensity model did not converge after "
            f"{retvals.get('iterations', _MAXITER)} iterations.",
            stage="propensity", resample_id=rid,
        )

    ps = np.asarray(result.predict(), dtype=float)
    if len(ps) != len(data):
        raise FitFailureError(
            f"Propensity model used {len(ps)} of {len(data)} records; "
            f"covariates must not contain missing values.",
            stage="propensity", resample_id=rid,
        )
    if not np.all(np.isfinite(ps)):
        raise FitFailureError(
            "Propensity model produced non-finite scores.",
            stage="propensity", resample_id=rid,
        )

    n_clipped = int(np.sum((ps < clip) | (ps > 1.0 - clip)))
    if n_clipped:
        logger.debug("Resample %r: clipped %d propensity scores to [%g, %g]",
                     rid, n_clipped, clip, 1.0 - clip)

    return PropensityFit(
        resample_id=rid,
        scores=np.clip(ps, clip, 1.0 - clip),
        clip=clip,
        converged=True,
        n_iterations=retvals.get("iterations"),
    )
