from __future__ import annotations

from enum import Enum

import numpy as np

from .._exceptions import InvalidInputError


class WeightKind(str, Enum):
    """
    Weighting estimand: which population the weighted sample is rebalanced to.

    - ``ATE``: the whole population (treated ``1/e``, untreated ``1/(1-e)``).
    - ``ATT``: the treated (treated ``1``, untreated ``e/(1-e)``).
    - ``ATC``: the untreated (treated ``(1-e)/e``, untreated ``1``).
    - ``OVERLAP``: the population with clinical equipoise (treated ``1-e``,
      untreated ``e``). Bounded by construction.
    """

    ATE = "ATE"
    ATT = "ATT"
    ATC = "ATC"
    OVERLAP = "OVERLAP"

    @classmethod
    def parse(cls, value) -> WeightKind:
        """Accept a member or its case-insensitive name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise InvalidInputError(
                f"Unknown weight estimand {value!r}. "
                f"Choose one of: {[k.value for k in cls]}"
            ) from None

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    WeightKind.ATE: "average treatment effect",
    WeightKind.ATT: "average treatment effect on the treated",
    WeightKind.ATC: "average treatment effect on the controls",
    WeightKind.OVERLAP: "average treatment effect in the overlap population",
}


def _weights(treated: np.ndarray, e: np.ndarray, estimand: WeightKind) -> np.ndarray:
    if estimand is WeightKind.ATE:
        return np.where(treated, 1.0 / e, 1.0 / (1.0 - e))
    if estimand is WeightKind.ATT:
        return np.where(treated, 1.0, e / (1.0 - e))
    if estimand is WeightKind.ATC:
        return np.where(treated, (1.0 - e) / e, 1.0)
    return np.where(treated, 1.0 - e, e)


def compute_weights(
    treatment,
    propensity,
    estimand: WeightKind | str = WeightKind.ATE,
    cap: float | None = None,
) -> np.ndarray:
    """
    Inverse-probability weights for aligned arrays of treatment and propensity.

    Each weight depends only on its own record's (treatment, propensity) pair.

    Parameters
    ----------
    treatment : array-like
        Binary (0/1 or bool) treatment indicators.
    propensity : array-like
        Clipped propensity scores, strictly inside (0, 1).
    estimand : WeightKind or str
        Weighting scheme, ``ATE`` by default.
    cap : float, optional
        Upper bound applied to every weight. ``None`` leaves weights untruncated.

    Raises
    ------
    ``InvalidInputError``
        If the arrays differ in length, treatment is not binary, a propensity
        lies outside (0, 1), or ``cap`` is not positive.
    """
    estimand = WeightKind.parse(estimand)
    t = np.asarray(treatment, dtype=float)
    e = np.asarray(propensity, dtype=float)

    if t.shape != e.shape:
        raise InvalidInputError(
            f"Treatment and propensity must align; got shapes {t.shape} and {e.shape}."
        )
    if not np.all((t == 0.0) | (t == 1.0)):
        raise InvalidInputError("Treatment indicators must be binary (0/1).")
    if not np.all((e > 0.0) & (e < 1.0)):
        raise InvalidInputError(
            "Propensity scores must lie strictly inside (0, 1); clip them first."
        )
    if cap is not None and not cap > 0:
        raise InvalidInputError(f"Weight cap must be positive, got {cap!r}.")

    w = _weights(t == 1.0, e, estimand)
    if cap is not None:
        w = np.minimum(w, cap)

    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise InvalidInputError("Computed weights are not finite and non-negative.")
    return w


def compute_weight(
    treatment,
    propensity: float,
    estimand: WeightKind | str = WeightKind.ATE,
    cap: float | None = None,
) -> float:
    """Weight for a single record. See :func:`compute_weights`."""
    return float(compute_weights([treatment], [propensity], estimand, cap)[0])
