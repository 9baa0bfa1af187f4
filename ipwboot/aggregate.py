from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd
import scipy.stats as st

from ._exceptions import InvalidInputError, MissingTermError
from .estimators.outcome import OutcomeFit
from .resampling import APPARENT, order_key

logger = logging.getLogger(__name__)


class EstimateDistribution:
    """
    The bootstrap distribution of one coefficient.

    Estimates are held in resample-index order with the apparent (full-data)
    estimate, if any, in last position, so ``len(dist)`` is the number of
    successful bootstrap fits plus one when the apparent fit is included.
    Summary statistics and confidence intervals use the bootstrap estimates
    only.
    """

    def __init__(self, term: str, estimates: np.ndarray, resample_ids: Sequence) -> None:
        self._term = term
        self._estimates = np.asarray(estimates, dtype=float)
        self._resample_ids = list(resample_ids)
        self._boot_mask = np.array(
            [rid != APPARENT for rid in self._resample_ids], dtype=bool
        )

    @property
    def term(self) -> str:
        """Name of the coefficient this distribution describes."""
        return self._term

    @property
    def estimates(self) -> np.ndarray:
        """All estimates in resample order, apparent last. A copy."""
        return self._estimates.copy()

    @property
    def resample_ids(self) -> list:
        return list(self._resample_ids)

    @property
    def bootstrap_estimates(self) -> np.ndarray:
        """Estimates from bootstrap resamples only, in resample order."""
        return self._estimates[self._boot_mask]

    @property
    def apparent(self) -> float | None:
        """Estimate on the original data, or ``None`` if it was not fitted."""
        if self._boot_mask.all():
            return None
        return float(self._estimates[~self._boot_mask][0])

    @property
    def mean(self) -> float:
        boot = self.bootstrap_estimates
        return float(np.mean(boot)) if len(boot) else float("nan")

    @property
    def std_err(self) -> float:
        """Bootstrap standard error (sample standard deviation, ``ddof=1``)."""
        boot = self.bootstrap_estimates
        return float(np.std(boot, ddof=1)) if len(boot) > 1 else float("nan")

    def conf_int(self, level: float = 0.95, method: str = "percentile") -> tuple[float, float]:
        """
        Bootstrap confidence interval.

        Parameters
        ----------
        level : float
            Coverage, in (0, 1).
        method : str
            ``"percentile"`` takes quantiles of the bootstrap estimates.
            ``"normal"`` centres a normal interval with the bootstrap standard
            error on the apparent estimate (the bootstrap mean if absent).
        """
        if not 0.0 < level < 1.0:
            raise InvalidInputError(f"Confidence level must lie in (0, 1), got {level!r}.")
        boot = self.bootstrap_estimates
        if len(boot) < 2:
            return (float("nan"), float("nan"))

        alpha = 1.0 - level
        if method == "percentile":
            return (
                float(np.percentile(boot, 100 * alpha / 2)),
                float(np.percentile(boot, 100 * (1 - alpha / 2))),
            )
        if method == "normal":
            centre = self.apparent if self.apparent is not None else self.mean
            z = st.norm.ppf(1 - alpha / 2)
            return (centre - z * self.std_err, centre + z * self.std_err)
        raise InvalidInputError(
            f"Unknown interval method {method!r}; use 'percentile' or 'normal'."
        )

    def to_series(self) -> pd.Series:
        """Estimates as a Series indexed by resample id."""
        return pd.Series(
            self._estimates,
            index=pd.Index(self._resample_ids, name="resample", dtype=object),
            name=self._term,
        )

    def __len__(self) -> int:
        return len(self._estimates)

    def __repr__(self) -> str:
        return (
            f"EstimateDistribution(term={self._term!r}, "
            f"n_bootstrap={int(self._boot_mask.sum())}, apparent={self.apparent!r})"
        )


def aggregate(fits: Sequence[OutcomeFit], term: str) -> EstimateDistribution:
    """
    Collect ``term``'s coefficient from every outcome fit.

    The result is ordered by resample index regardless of the order of
    ``fits``, with the apparent fit last.

    Raises
    ------
    ``MissingTermError``
        If any fit has no coefficient named ``term``.
    """
    ordered = sorted(fits, key=lambda f: order_key(f.resample_id))
    for f in ordered:
        if term not in f.names:
            raise MissingTermError(term, resample_id=f.resample_id)
    estimates = np.array([f.estimate(term) for f in ordered], dtype=float)
    logger.debug("Aggregated %d fits for term %r", len(ordered), term)
    return EstimateDistribution(
        term=term,
        estimates=estimates,
        resample_ids=[f.resample_id for f in ordered],
    )
