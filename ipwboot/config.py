from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum

import numpy as np

from ._exceptions import InvalidInputError
from .estimators.propensity import DEFAULT_PROPENSITY_CLIP
from .estimators.weights import WeightKind

DEFAULT_RESAMPLE_COUNT = 500
DEFAULT_SEED           = 42


def _is_int(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, (bool, np.bool_))


class FailurePolicy(str, Enum):
    """What to do when one resample's propensity or outcome fit fails."""

    ABORT = "abort"
    SKIP = "skip"

    @classmethod
    def parse(cls, value) -> FailurePolicy:
        if isinstance(value, cls):
            return value
        key = str(value).lower()
        if key == "skip-and-report":
            key = "skip"
        try:
            return cls(key)
        except ValueError:
            raise InvalidInputError(
                f"Unknown failure policy {value!r}. Choose 'abort' or 'skip'."
            ) from None


@dataclass(frozen=True)
class BootstrapConfig:
    """
    Settings for a bootstrap IPW run.

    All fields are validated on construction; invalid values raise
    ``InvalidInputError`` before any data is touched. Enum fields accept
    their string names (``weight_estimand="att"``, ``failure_policy="abort"``).
    """

    resample_count: int = DEFAULT_RESAMPLE_COUNT
    """Number of bootstrap resamples B."""

    include_apparent: bool = True
    """Also fit the unperturbed data, reported as the point estimate."""

    weight_estimand: WeightKind = WeightKind.ATE
    """Weighting scheme passed to :func:`~ipwboot.estimators.weights.compute_weights`."""

    propensity_clip: float = DEFAULT_PROPENSITY_CLIP
    """Propensity scores are clipped to ``[clip, 1 - clip]``."""

    weight_cap: float | None = None
    """Upper bound on any single weight. ``None`` means no truncation."""

    random_seed: int | None = DEFAULT_SEED
    """Root seed for the per-resample random streams."""

    failure_policy: FailurePolicy = FailurePolicy.SKIP
    """``SKIP`` records and excludes failed resamples; ``ABORT`` raises."""

    n_jobs: int | None = None
    """Worker threads. ``None`` uses every available CPU, ``1`` runs serially."""

    def __post_init__(self) -> None:
        object.__setattr__(self, "weight_estimand", WeightKind.parse(self.weight_estimand))
        object.__setattr__(self, "failure_policy", FailurePolicy.parse(self.failure_policy))

        if not _is_int(self.resample_count):
            raise InvalidInputError(
                f"resample_count must be an integer, got {self.resample_count!r}."
            )
        if self.resample_count < 1:
            raise InvalidInputError(
                f"resample_count must be at least 1, got {self.resample_count}."
            )
        if not isinstance(self.include_apparent, bool):
            raise InvalidInputError("include_apparent must be True or False.")
        if not 0.0 < self.propensity_clip < 0.5:
            raise InvalidInputError(
                f"propensity_clip must lie in (0, 0.5), got {self.propensity_clip!r}."
            )
        if self.weight_cap is not None and not self.weight_cap > 0:
            raise InvalidInputError(
                f"weight_cap must be positive or None, got {self.weight_cap!r}."
            )
        if self.random_seed is not None and (
            not _is_int(self.random_seed) or self.random_seed < 0
        ):
            raise InvalidInputError(
                f"random_seed must be a non-negative integer or None, got {self.random_seed!r}."
            )
        if self.n_jobs is not None and (not _is_int(self.n_jobs) or self.n_jobs < 1):
            raise InvalidInputError(f"n_jobs must be None or an integer >= 1, got {self.n_jobs!r}.")

        for name in ("resample_count", "random_seed", "n_jobs"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, int(value))

    def replace(self, **changes) -> BootstrapConfig:
        """Return a validated copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)
