from __future__ import annotations


class InvalidInputError(ValueError):
    """
    Raised for malformed configuration or data, before any resampling starts.

    Subclasses ``ValueError`` so callers that already guard estimator input
    with ``except ValueError`` keep working.
    """
    pass


class FitFailureError(RuntimeError):
    """
    Raised when the propensity or outcome model cannot be fitted on one resample.

    ``stage`` is ``"propensity"`` or ``"outcome"``; ``resample_id`` identifies
    the resample (``None`` when the fit was run outside a pipeline).
    """

    def __init__(self, message: str, stage: str | None = None, resample_id=None) -> None:
        super().__init__(message)
        self.stage = stage
        self.resample_id = resample_id


class MissingTermError(KeyError):
    """Raised when an outcome fit has no coefficient for the requested term."""

    def __init__(self, term: str, resample_id=None) -> None:
        super().__init__(term)
        self.term = term
        self.resample_id = resample_id

    def __str__(self) -> str:
        return f"Outcome fit for resample {self.resample_id!r} has no term {self.term!r}"
