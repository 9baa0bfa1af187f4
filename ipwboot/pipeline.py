from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd
import scipy.stats as st

from ._assumptions import IPW_ASSUMPTIONS, Assumption
from ._exceptions import FitFailureError, InvalidInputError, MissingTermError
from .aggregate import EstimateDistribution, aggregate
from .config import BootstrapConfig, FailurePolicy
from .estimators.outcome import OutcomeFit, fit_outcome
from .estimators.propensity import fit_propensity
from .estimators.weights import WeightKind, compute_weights
from .resampling import APPARENT, apparent, child_seeds, draw_indices, order_key, take

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    RESAMPLING = "resampling"
    FITTING = "fitting"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """How a run that returned a result ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ResampleFailure:
    """A resample excluded from the distribution because a fit failed."""

    resample_id: int | str
    stage: str | None
    message: str


# ── Data preparation ──────────────────────────────────────────────────────────

def prepare_dataset(
    data: pd.DataFrame,
    treatment: str,
    outcome: str,
    covariates: Sequence[str] = (),
    adjust_for: Sequence[str] = (),
) -> pd.DataFrame:
    """
    Validate ``data`` and return a working copy of the referenced columns.

    The copy has a fresh ``RangeIndex`` and a float 0/1 treatment column;
    ``data`` itself is left untouched.

    Raises
    ------
    ``InvalidInputError``
        If the frame is empty, a column is missing or misused, treatment or
        outcome has missing values, treatment is not binary with both groups
        present, or a covariate has missing values.
    """
    if not isinstance(data, pd.DataFrame):
        raise InvalidInputError(f"Expected a pandas DataFrame, got {type(data).__name__}.")
    if len(data) == 0:
        raise InvalidInputError("Dataset is empty.")
    if treatment == outcome:
        raise InvalidInputError("Treatment and outcome must be different variables.")

    covariates, adjust_for = list(covariates), list(adjust_for)
    for label, names in [("Covariate", covariates), ("Adjustment covariate", adjust_for)]:
        for name in names:
            if name in (treatment, outcome):
                raise InvalidInputError(
                    f"{label} '{name}' cannot also be the treatment or the outcome."
                )

    columns = list(dict.fromkeys([treatment, outcome, *covariates, *adjust_for]))
    for label, var in [("Treatment", treatment), ("Outcome", outcome)]:
        if var not in data.columns:
            raise InvalidInputError(f"{label} column '{var}' not found in dataframe.")
    missing_cols = [c for c in columns if c not in data.columns]
    if missing_cols:
        raise InvalidInputError(f"Covariate columns not found in dataframe: {missing_cols}")

    frame = data[columns].reset_index(drop=True)

    null_counts = frame.isna().sum()
    if null_counts.any():
        bad = {c: int(n) for c, n in null_counts.items() if n}
        raise InvalidInputError(f"Missing values are not supported; found {bad}.")

    t_vals = set(frame[treatment].unique())
    if not t_vals <= {0, 1}:
        raise InvalidInputError(
            f"Treatment '{treatment}' must be binary (0/1). Found values: {sorted(t_vals, key=str)}"
        )
    if len(t_vals) < 2:
        raise InvalidInputError(
            f"Treatment '{treatment}' must contain both 0 and 1. Found only: {t_vals}"
        )
    if not pd.api.types.is_numeric_dtype(frame[outcome]) or pd.api.types.is_bool_dtype(frame[outcome]):
        raise InvalidInputError(f"Outcome '{outcome}' must be numeric.")

    return frame.assign(**{treatment: frame[treatment].astype(float)})


# ── Per-resample work ─────────────────────────────────────────────────────────

def fit_resample(
    resample,
    treatment: str,
    outcome: str,
    covariates: Sequence[str],
    config: BootstrapConfig,
    adjust_for: Sequence[str] = (),
) -> OutcomeFit:
    """
    Propensity fit, weighting, and weighted outcome fit for one resample.

    Pure with respect to its arguments; nothing is shared between resamples.
    """
    ps = fit_propensity(resample, treatment, covariates, clip=config.propensity_clip)
    w = compute_weights(
        resample.data[treatment].to_numpy(),
        ps.scores,
        config.weight_estimand,
        cap=config.weight_cap,
    )
    return fit_outcome(resample, outcome, treatment, w, adjust_for=adjust_for)


# ── Result ─────────────────────────────────────────────────────────────────────

class IPWResult:
    """
    The result of a bootstrap IPW estimation.

    The point estimate is the weighted regression on the full data (the
    apparent fit) when it was requested, otherwise the bootstrap mean.
    Standard errors and intervals come from the bootstrap distribution.
    Resamples whose fits failed are listed in ``failures`` and counted in
    ``n_skipped``; they are not part of the distribution.
    """

    def __init__(
        self,
        distribution: EstimateDistribution,
        unadjusted_effect: float,
        failures: list[ResampleFailure],
        n_requested: int,
        elapsed: float,
        status: RunStatus,
        treatment: str,
        outcome: str,
        covariates: list[str],
        adjust_for: list[str],
        config: BootstrapConfig,
    ) -> None:
        self._distribution = distribution
        self._unadjusted_effect = unadjusted_effect
        self._failures = failures
        self._n_requested = n_requested
        self._elapsed = elapsed
        self._status = status
        self._treatment = treatment
        self._outcome = outcome
        self._covariates = covariates
        self._adjust_for = adjust_for
        self._config = config

    @property
    def effect(self) -> float:
        """Point estimate of the treatment effect for the configured estimand."""
        apparent_est = self._distribution.apparent
        return apparent_est if apparent_est is not None else self._distribution.mean

    @property
    def unadjusted_effect(self) -> float:
        """Naive mean difference Y|T=1 minus Y|T=0 on the full data, no weighting."""
        return self._unadjusted_effect

    @property
    def std_err(self) -> float:
        """Bootstrap standard error of the effect."""
        return self._distribution.std_err

    @property
    def conf_int(self) -> tuple[float, float]:
        """Bootstrap percentile 95% confidence interval."""
        return self._distribution.conf_int(0.95, method="percentile")

    @property
    def pvalue(self) -> float:
        """Two-sided p-value for the effect (``H0: effect = 0``), via z-test."""
        se = self.std_err
        if not np.isfinite(se) or se == 0:
            return float("nan")
        return float(2.0 * st.norm.sf(abs(self.effect) / se))

    @property
    def distribution(self) -> EstimateDistribution:
        """Per-resample estimates, in resample order with the apparent fit last."""
        return self._distribution

    @property
    def estimand(self) -> WeightKind:
        return self._config.weight_estimand

    @property
    def covariates(self) -> list[str]:
        """Covariates in the propensity score model."""
        return list(self._covariates)

    @property
    def adjust_for(self) -> list[str]:
        """Covariates added to the weighted outcome regression."""
        return list(self._adjust_for)

    @property
    def config(self) -> BootstrapConfig:
        return self._config

    @property
    def failures(self) -> list[ResampleFailure]:
        """Resamples excluded because a fit failed, in resample order."""
        return list(self._failures)

    @property
    def n_requested(self) -> int:
        """Resamples the run was asked for, counting the apparent sample."""
        return self._n_requested

    @property
    def n_attempted(self) -> int:
        """Resamples that were processed, successfully or not."""
        return len(self._distribution) + len(self._failures)

    @property
    def n_skipped(self) -> int:
        return len(self._failures)

    @property
    def elapsed(self) -> float:
        """Wall-clock seconds spent in ``fit()``."""
        return self._elapsed

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def assumptions(self) -> list[Assumption]:
        """Modelling assumptions required for a causal interpretation."""
        return list(IPW_ASSUMPTIONS)

    def executive_summary(self) -> str:
        """Narrative explanation of the method, assumptions, and result."""
        from ._explain import explain_ipw
        return explain_ipw(self)

    def summary(self) -> str:
        lo, hi = self.conf_int
        est = self.estimand
        n_boot = len(self._distribution.bootstrap_estimates)
        covs = ", ".join(self._covariates) if self._covariates else "none (intercept only)"

        lines = [
            "",
            f"IPW Causal Effect: {self._treatment} → {self._outcome}",
            f"  Estimand: {est.value} ({est.description})",
            "─" * 54,
            f"  IPW estimate         : {self.effect:>10.4f}  (propensity covariates: {covs})",
            f"  Unadjusted estimate  : {self.unadjusted_effect:>10.4f}  (naive mean difference)",
            f"  Confounding bias     : {self.unadjusted_effect - self.effect:>+10.4f}",
            "",
            f"  Std. error           : {self.std_err:>10.4f}  (bootstrap, N={n_boot})",
            f"  95% CI               : [{lo:.4f}, {hi:.4f}]  (bootstrap percentile)",
            f"  p-value              : {self.pvalue:>10.4f}",
            "",
            f"  Resamples            : {self.n_attempted} of {self.n_requested} attempted, "
            f"{self.n_skipped} skipped",
        ]
        if self._status is RunStatus.CANCELLED:
            lines.append("  Run was cancelled before all resamples completed.")
        lines += [
            f"  Elapsed              : {self.elapsed:.2f}s",
            "",
            "  Assumptions",
            "  " + "┄" * 48,
        ]
        for a in IPW_ASSUMPTIONS:
            lines.append(f"  {a.fmt_tag()}  {a.name}")
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


# ── Estimator ──────────────────────────────────────────────────────────────────

class IPWBootstrap:
    """
    Inverse-probability-weighted treatment effect with bootstrap inference.

    For each of ``config.resample_count`` bootstrap resamples (plus the
    original data when ``config.include_apparent`` is set):

    1. Fits a logistic propensity model of treatment on ``covariates``.
    2. Turns the clipped scores into case weights for the chosen estimand.
    3. Fits a weighted regression of outcome on treatment (and
       ``adjust_for``, if given); the treatment coefficient is the estimate.

    Resamples are independent and run on a thread pool of ``config.n_jobs``
    workers. Each resample's rows come from its own seed stream, so the
    result does not depend on the number of workers.

    Requires **binary treatment** (0/1).

    Example::

        result = IPWBootstrap(
            treatment="education", outcome="income", covariates=["ability"],
        ).fit(df)
        print(result.summary())
    """

    def __init__(
        self,
        treatment: str,
        outcome: str,
        covariates: Sequence[str] = (),
        config: BootstrapConfig | None = None,
        adjust_for: Sequence[str] = (),
    ) -> None:
        self._treatment = treatment
        self._outcome = outcome
        self._covariates = list(covariates)
        self._adjust_for = list(adjust_for)
        self._config = config if config is not None else BootstrapConfig()
        self._state = PipelineState.IDLE
        if not isinstance(self._config, BootstrapConfig):
            raise InvalidInputError(
                f"config must be a BootstrapConfig, got {type(config).__name__}."
            )
        if treatment == outcome:
            raise InvalidInputError("Treatment and outcome must be different variables.")

    @property
    def state(self) -> PipelineState:
        """Where the most recent ``fit()`` is, or ended."""
        return self._state

    @property
    def config(self) -> BootstrapConfig:
        return self._config

    def _set_state(self, state: PipelineState) -> None:
        logger.debug("Pipeline state %s -> %s", self._state.value, state.value)
        self._state = state

    def _n_workers(self) -> int:
        if self._config.n_jobs is not None:
            return self._config.n_jobs
        return os.cpu_count() or 1

    def _task(self, data: pd.DataFrame, resample_id, seed_sequence) -> OutcomeFit:
        if resample_id == APPARENT:
            resample = apparent(data)
        else:
            resample = take(data, resample_id, draw_indices(len(data), seed_sequence))
        return fit_resample(
            resample, self._treatment, self._outcome, self._covariates,
            self._config, self._adjust_for,
        )

    def _collect(self, resample_id, get_fit, fits, failures) -> None:
        try:
            fits.append(get_fit())
        except FitFailureError as exc:
            if self._config.failure_policy is FailurePolicy.ABORT:
                logger.error("Resample %r failed at %s stage; aborting run: %s",
                             resample_id, exc.stage, exc)
                raise
            logger.warning("Resample %r skipped (%s stage): %s", resample_id, exc.stage, exc)
            failures.append(ResampleFailure(resample_id, exc.stage, str(exc)))

    def _run_serial(self, data, tasks, cancel_event, on_resample, fits, failures) -> bool:
        for rid, ss in tasks:
            if cancel_event is not None and cancel_event.is_set():
                return True
            self._collect(rid, lambda: self._task(data, rid, ss), fits, failures)
            if on_resample is not None:
                on_resample(rid)
        return False

    def _run_pool(self, data, tasks, n_workers, cancel_event, on_resample, fits, failures) -> bool:
        cancelled = False
        collected = set()
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = {pool.submit(self._task, data, rid, ss): rid for rid, ss in tasks}
            try:
                for fut in as_completed(futures):
                    rid = futures[fut]
                    collected.add(fut)
                    self._collect(rid, fut.result, fits, failures)
                    if on_resample is not None:
                        on_resample(rid)
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break
            finally:
                for fut in futures:
                    fut.cancel()
        # Leaving the pool waits for tasks that were already running; keep
        # their results along with any that finished before the break.
        if cancelled:
            for fut, rid in futures.items():
                if fut in collected or fut.cancelled():
                    continue
                self._collect(rid, fut.result, fits, failures)
                if on_resample is not None:
                    on_resample(rid)
            cancelled = len(fits) + len(failures) < len(tasks)
        return cancelled

    def fit(
        self,
        data: pd.DataFrame,
        cancel_event: threading.Event | None = None,
        on_resample: Callable[[int | str], None] | None = None,
    ) -> IPWResult:
        """
        Run the bootstrap and return the distribution of treatment effects.

        Parameters
        ----------
        data : pd.DataFrame
            Must contain a binary (0/1) treatment column, a numeric outcome
            column, and every covariate. Not modified.
        cancel_event : threading.Event, optional
            Checked after each resample completes. Once set, no further
            resamples start and the result covers the resamples finished so
            far, with ``status == RunStatus.CANCELLED``. Resamples already
            running on worker threads finish and are kept.
        on_resample : callable, optional
            Called with the resample id after each resample is processed,
            from the calling thread.

        Raises
        ------
        ``InvalidInputError``
            If the data fails validation. Raised before any resampling.
        ``FitFailureError``
            Under ``FailurePolicy.ABORT``, for the first resample whose fit fails.
        """
        cfg = self._config
        start = time.perf_counter()
        self._set_state(PipelineState.IDLE)

        try:
            prepared = prepare_dataset(
                data, self._treatment, self._outcome, self._covariates, self._adjust_for,
            )
        except InvalidInputError:
            self._set_state(PipelineState.FAILED)
            raise

        T, Y = self._treatment, self._outcome
        unadjusted = float(
            prepared.loc[prepared[T] == 1, Y].mean() - prepared.loc[prepared[T] == 0, Y].mean()
        )

        self._set_state(PipelineState.RESAMPLING)
        tasks: list[tuple] = list(enumerate(child_seeds(cfg.random_seed, cfg.resample_count)))
        if cfg.include_apparent:
            tasks.append((APPARENT, None))

        n_workers = min(self._n_workers(), len(tasks))
        logger.info(
            "Bootstrap IPW %s → %s: %d resamples, estimand=%s, %d worker(s)",
            T, Y, len(tasks), cfg.weight_estimand.value, n_workers,
        )

        self._set_state(PipelineState.FITTING)
        fits: list[OutcomeFit] = []
        failures: list[ResampleFailure] = []
        try:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif n_workers == 1:
                cancelled = self._run_serial(prepared, tasks, cancel_event, on_resample, fits, failures)
            else:
                cancelled = self._run_pool(prepared, tasks, n_workers, cancel_event, on_resample, fits, failures)
        except FitFailureError:
            self._set_state(PipelineState.FAILED)
            raise

        self._set_state(PipelineState.AGGREGATING)
        try:
            distribution = aggregate(fits, term=T)
        except MissingTermError:
            self._set_state(PipelineState.FAILED)
            raise
        failures.sort(key=lambda f: order_key(f.resample_id))

        elapsed = time.perf_counter() - start
        if cancelled:
            self._set_state(PipelineState.CANCELLED)
            logger.warning("Run cancelled after %d of %d resamples",
                           len(fits) + len(failures), len(tasks))
        else:
            self._set_state(PipelineState.DONE)
        logger.info("Finished in %.2fs: %d fitted, %d skipped",
                    elapsed, len(fits), len(failures))

        return IPWResult(
            distribution=distribution,
            unadjusted_effect=unadjusted,
            failures=failures,
            n_requested=len(tasks),
            elapsed=elapsed,
            status=RunStatus.CANCELLED if cancelled else RunStatus.COMPLETED,
            treatment=T,
            outcome=Y,
            covariates=list(self._covariates),
            adjust_for=list(self._adjust_for),
            config=cfg,
        )


def run_pipeline(
    data: pd.DataFrame,
    treatment: str,
    outcome: str,
    covariates: Sequence[str] = (),
    config: BootstrapConfig | None = None,
    adjust_for: Sequence[str] = (),
    cancel_event: threading.Event | None = None,
    on_resample: Callable[[int | str], None] | None = None,
) -> IPWResult:
    """Functional form of ``IPWBootstrap(...).fit(data)``."""
    return IPWBootstrap(
        treatment, outcome, covariates, config=config, adjust_for=adjust_for,
    ).fit(data, cancel_event=cancel_event, on_resample=on_resample)
