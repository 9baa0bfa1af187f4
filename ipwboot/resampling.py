"""
Bootstrap resampling of tabular records.

The random stream is partitioned per resample index: resample ``i`` is drawn
from the ``i``-th child of ``numpy.random.SeedSequence(seed)``. Its rows
therefore depend only on ``(seed, i, len(data))`` and not on the order in
which resamples are generated or processed, which keeps threaded and serial
runs bit-identical.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from ._exceptions import InvalidInputError

logger = logging.getLogger(__name__)

APPARENT = "apparent"
"""Resample id of the unperturbed original dataset."""


@dataclass(frozen=True)
class Resample:
    """
    One bootstrap resample: ``len(source)`` rows drawn with replacement.

    ``indices`` are positions into the source dataset; ``data`` holds the
    drawn rows, unchanged, re-indexed from 0.
    """

    resample_id: int | str
    indices: np.ndarray = field(repr=False)
    data: pd.DataFrame = field(repr=False)

    @property
    def is_apparent(self) -> bool:
        return self.resample_id == APPARENT

    def __len__(self) -> int:
        return len(self.data)


def order_key(resample_id) -> tuple[int, int]:
    """Sort key placing numbered resamples in index order and the apparent sample last."""
    if resample_id == APPARENT:
        return (1, 0)
    return (0, int(resample_id))


def _check_inputs(data: pd.DataFrame, count: int) -> None:
    if not isinstance(data, pd.DataFrame):
        raise InvalidInputError(
            f"Expected a pandas DataFrame, got {type(data).__name__}."
        )
    if len(data) == 0:
        raise InvalidInputError("Cannot resample an empty dataset.")
    if isinstance(count, bool) or not isinstance(count, (int, np.integer)) or count < 1:
        raise InvalidInputError(f"Resample count must be an integer >= 1, got {count!r}.")


def child_seeds(seed: int | None, count: int) -> list[np.random.SeedSequence]:
    """One independent seed sequence per resample index."""
    return np.random.SeedSequence(seed).spawn(count)


def draw_indices(n: int, seed_sequence: np.random.SeedSequence) -> np.ndarray:
    """Draw ``n`` row positions uniformly with replacement."""
    rng = np.random.default_rng(seed_sequence)
    return rng.integers(0, n, size=n)


def take(data: pd.DataFrame, resample_id, indices: np.ndarray) -> Resample:
    """Build a :class:`Resample` from row positions into ``data``."""
    rows = data.iloc[indices].reset_index(drop=True)
    return Resample(resample_id=resample_id, indices=indices, data=rows)


def apparent(data: pd.DataFrame) -> Resample:
    """The original dataset wrapped as a resample (every row drawn exactly once)."""
    return take(data, APPARENT, np.arange(len(data)))


def iter_resamples(
    data: pd.DataFrame,
    count: int,
    include_apparent: bool = False,
    seed: int | None = None,
) -> Iterator[Resample]:
    """Lazy form of :func:`resample`; yields resamples one at a time."""
    _check_inputs(data, count)
    n = len(data)
    for i, ss in enumerate(child_seeds(seed, count)):
        yield take(data, i, draw_indices(n, ss))
    if include_apparent:
        yield apparent(data)


def resample(
    data: pd.DataFrame,
    count: int,
    include_apparent: bool = False,
    seed: int | None = None,
) -> list[Resample]:
    """
    Draw ``count`` bootstrap resamples of ``data``.

    Parameters
    ----------
    data : pd.DataFrame
        Source records. Not modified.
    count : int
        Number of resamples, at least 1.
    include_apparent : bool
        Append the original dataset as an extra resample with id ``APPARENT``.
    seed : int, optional
        Root seed. The same seed and data always give the same resamples.

    Raises
    ------
    ``InvalidInputError``
        If ``data`` is empty or ``count < 1``.
    """
    resamples = list(iter_resamples(data, count, include_apparent, seed))
    logger.debug("Drew %d resamples of %d rows (seed=%r)", len(resamples), len(data), seed)
    return resamples
