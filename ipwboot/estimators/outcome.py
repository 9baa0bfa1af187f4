from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from .._exceptions import FitFailureError, InvalidInputError, MissingTermError

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"


@dataclass(frozen=True)
class Term:
    """One row of an outcome fit: a coefficient and its standard error."""

    name: str
    estimate: float
    std_err: float


@dataclass(frozen=True)
class OutcomeFit:
    """
    Coefficient table of the weighted outcome regression on one resample.

    There is exactly one ``Term`` per term of the linear predictor, in model
    order: ``Intercept``, the treatment, then any adjustment covariates.
    Standard errors are the model-based WLS errors for that single fit; the
    bootstrap distribution is the intended source of uncertainty.
    """

    resample_id: int | str | None
    terms: tuple[Term, ...]
    nobs: int
    n_zero_weight: int = 0

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.terms]

    def term(self, name: str) -> Term:
        for t in self.terms:
            if t.name == name:
                return t
        raise MissingTermError(name, resample_id=self.resample_id)

    def estimate(self, name: str) -> float:
        return self.term(name).estimate

    def std_err(self, name: str) -> float:
        return self.term(name).std_err

    def to_frame(self) -> pd.DataFrame:
        """The coefficient table as a DataFrame indexed by term name."""
        return pd.DataFrame(
            {
                "estimate": [t.estimate for t in self.terms],
                "std_err": [t.std_err for t in self.terms],
            },
            index=pd.Index(self.names, name="term"),
        )


def fit_outcome(
    resample,
    outcome: str,
    treatment: str,
    weights,
    adjust_for: Sequence[str] = (),
) -> OutcomeFit:
    """
    Weighted least squares of ``outcome`` on ``treatment`` plus an intercept.

    Parameters
    ----------
    resample : Resample
        Records to fit on.
    outcome, treatment : str
        Column names.
    weights : array-like
        One non-negative case weight per record, aligned with the resample.
        Zero-weight records are left out of the fit and contribute nothing.
    adjust_for : sequence of str
        Extra covariates for regression adjustment. Empty by default.

    Raises
    ------
    ``FitFailureError``
        If every weight is zero, the weighted design is rank deficient (for
        example every positively weighted record shares one treatment value),
        or the fit produced non-finite coefficients or standard errors.
    ``InvalidInputError``
        If ``weights`` is misaligned, negative, or non-finite.
    """
    rid = resample.resample_id
    data = resample.data
    w = np.asarray(weights, dtype=float)

    if w.ndim != 1 or len(w) != len(data):
        raise InvalidInputError(
            f"Expected {len(data)} weights aligned with the resample, got shape {w.shape}."
        )
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise InvalidInputError("Weights must be finite and non-negative.")
    if not np.any(w > 0):
        raise FitFailureError(
            "Every record has zero weight; the outcome model has no data.",
            stage="outcome", resample_id=rid,
        )

    # Zero-weight records are dropped so they do not count towards the
    # residual degrees of freedom.
    keep = w > 0
    rhs = " + ".join([treatment, *adjust_for])
    try:
        result = smf.wls(f"{outcome} ~ {rhs}", data=data.loc[keep], weights=w[keep]).fit()
    except np.linalg.LinAlgError as exc:
        raise FitFailureError(
            f"Outcome model failed to fit: {exc}",
            stage="outcome", resample_id=rid,
        ) from exc

    exog = result.model.exog
    n_used = int(keep.sum())
    if len(exog) != n_used:
        raise FitFailureError(
            f"Outcome model used {len(exog)} of {n_used} weighted records; "
            f"outcome and covariates must not contain missing values.",
            stage="outcome", resample_id=rid,
        )

    k = exog.shape[1]
    rank = np.linalg.matrix_rank(exog)
    if rank < k:
        raise FitFailureError(
            f"Weighted outcome design is rank deficient (rank {rank} < {k} terms); "
            f"check that positively weighted records include both treatment groups.",
            stage="outcome", resample_id=rid,
        )

    params = np.asarray(result.params, dtype=float)
    bse = np.asarray(result.bse, dtype=float)
    if not (np.all(np.isfinite(params)) and np.all(np.isfinite(bse))):
        raise FitFailureError(
            "Outcome model produced non-finite coefficients or standard errors.",
            stage="outcome", resample_id=rid,
        )

    terms = tuple(
        Term(name=str(name), estimate=float(b), std_err=float(se))
        for name, b, se in zip(result.model.exog_names, params, bse)
    )
    n_zero = int(np.sum(w == 0))
    if n_zero:
        logger.debug("Resample %r: %d records carry zero weight", rid, n_zero)

    return OutcomeFit(resample_id=rid, terms=terms, nobs=len(data), n_zero_weight=n_zero)
