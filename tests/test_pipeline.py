import threading
import time

import numpy as np
import pandas as pd
import pytest

from ipwboot import (
    APPARENT, BootstrapConfig, FitFailureError, InvalidInputError, IPWBootstrap,
    IPWResult, PipelineState, RunStatus, prepare_dataset, run_pipeline,
)
import ipwboot.pipeline as pipeline_module


N = 1_000
TRUE_EFFECT = 2.0


def make_data(true_effect=TRUE_EFFECT, confounding=0.0, seed=42):
    """
    Fixed seed so every call returns the same dataframe.

      treatment ~ Bernoulli(logistic(x))
      outcome   = true_effect * treatment + confounding * x + noise
    """
    rng = np.random.default_rng(seed)
    x = rng.normal(size=N)
    t = (rng.uniform(size=N) < 1 / (1 + np.exp(-x))).astype(float)
    y = true_effect * t + confounding * x + rng.normal(size=N)
    return pd.DataFrame({"x": x, "t": t, "y": y})


def make_fragile_data():
    """
    One treated record among 21: a bootstrap resample misses it about a
    third of the time, which makes the propensity fit fail.
    """
    x = np.linspace(-1.0, 1.0, 21)
    t = np.zeros(21)
    t[10] = 1.0
    y = x + np.where(t == 1, 2.0, 0.0)
    return pd.DataFrame({"x": x, "t": t, "y": y})


def small_config(**changes):
    return BootstrapConfig(resample_count=20, n_jobs=1).replace(**changes)


class TestPrepareDataset:
    def test_missing_treatment_column_raises(self):
        with pytest.raises(InvalidInputError, match="Treatment"):
            prepare_dataset(make_data().drop(columns=["t"]), "t", "y", ["x"])

    def test_missing_outcome_column_raises(self):
        with pytest.raises(InvalidInputError, match="Outcome"):
            prepare_dataset(make_data().drop(columns=["y"]), "t", "y", ["x"])

    def test_missing_covariate_column_raises(self):
        with pytest.raises(InvalidInputError, match="Covariate"):
            prepare_dataset(make_data(), "t", "y", ["z"])

    def test_treatment_as_covariate_raises(self):
        with pytest.raises(InvalidInputError, match="cannot also be"):
            prepare_dataset(make_data(), "t", "y", ["x", "t"])

    def test_empty_dataset_raises(self):
        with pytest.raises(InvalidInputError, match="empty"):
            prepare_dataset(make_data().iloc[:0], "t", "y", ["x"])

    def test_missing_values_raise(self):
        df = make_data()
        df.loc[3, "y"] = np.nan
        with pytest.raises(InvalidInputError, match="Missing"):
            prepare_dataset(df, "t", "y", ["x"])

    def test_non_binary_treatment_raises(self):
        df = make_data().assign(t=lambda d: d["t"] * 3 + 1)
        with pytest.raises(InvalidInputError, match="binary"):
            prepare_dataset(df, "t", "y", ["x"])

    def test_single_group_raises(self):
        with pytest.raises(InvalidInputError, match="both"):
            prepare_dataset(make_data().assign(t=1.0), "t", "y", ["x"])

    def test_bool_treatment_becomes_float(self):
        df = make_data().assign(t=lambda d: d["t"] == 1)
        out = prepare_dataset(df, "t", "y", ["x"])
        assert out["t"].dtype == float
        assert set(out["t"].unique()) == {0.0, 1.0}
        assert df["t"].dtype == bool

    def test_keeps_only_referenced_columns(self):
        df = make_data().assign(extra="a")
        out = prepare_dataset(df, "t", "y", ["x"])
        assert list(out.columns) == ["t", "y", "x"]


class TestIPWBootstrapValidation:
    """All raise before any resampling, so no fitting happens."""

    def test_treatment_equals_outcome_raises(self):
        with pytest.raises(InvalidInputError, match="different"):
            IPWBootstrap(treatment="y", outcome="y")

    def test_bad_config_type_raises(self):
        with pytest.raises(InvalidInputError, match="BootstrapConfig"):
            IPWBootstrap("t", "y", ["x"], config={"resample_count": 10})

    def test_invalid_data_sets_failed_state(self):
        est = IPWBootstrap("t", "y", ["x"], config=small_config())
        with pytest.raises(InvalidInputError):
            est.fit(make_data().iloc[:0])
        assert est.state is PipelineState.FAILED


class TestIPWBootstrapScenario:
    """Fit once per class (setup_class) so the bootstrap runs only once."""

    @classmethod
    def setup_class(cls):
        cls.df = make_data()
        cls.estimator = IPWBootstrap(
            "t", "y", ["x"],
            config=BootstrapConfig(resample_count=500, weight_estimand="ATE"),
        )
        cls.result = cls.estimator.fit(cls.df)

    def test_returns_ipw_result(self):
        assert isinstance(self.result, IPWResult)
        assert self.estimator.state is PipelineState.DONE
        assert self.result.status is RunStatus.COMPLETED

    def test_distribution_mean_close_to_true_effect(self):
        assert abs(self.result.distribution.mean - TRUE_EFFECT) < 0.3

    def test_effect_close_to_true_effect(self):
        assert abs(self.result.effect - TRUE_EFFECT) < 0.3

    def test_distribution_length(self):
        assert len(self.result.distribution) == 501
        assert self.result.distribution.resample_ids[-1] == APPARENT

    def test_metadata(self):
        assert self.result.n_requested == 501
        assert self.result.n_attempted == 501
        assert self.result.n_skipped == 0
        assert self.result.failures == []
        assert self.result.elapsed > 0

    def test_std_err_and_interval(self):
        lo, hi = self.result.conf_int
        assert self.result.std_err > 0
        assert lo < self.result.effect < hi
        assert self.result.pvalue < 0.05

    def test_summary_contains_names(self):
        summary = self.result.summary()
        assert "IPW" in summary
        assert "ATE" in summary
        assert "t → y" in summary
        assert repr(self.result) == summary

    def test_executive_summary(self):
        text = self.result.executive_summary()
        assert "Inverse Probability Weighting" in text
        assert "ASSUMPTIONS" in text
        assert "500 bootstrap resamples" in text
        assert "inverse of the probability of the treatment it actually received" in text

    def test_input_not_modified(self):
        assert list(self.df.columns) == ["x", "t", "y"]
        assert self.df["t"].dtype == float


class TestIPWBootstrapConfounding:
    def test_weighting_removes_confounding_bias(self):
        df = make_data(confounding=1.5, seed=7)
        result = run_pipeline(
            df, "t", "y", ["x"],
            config=BootstrapConfig(resample_count=100, n_jobs=1),
        )
        assert abs(result.effect - TRUE_EFFECT) < 0.4
        assert abs(result.unadjusted_effect - TRUE_EFFECT) > 0.5

    @pytest.mark.parametrize("estimand", ["ATT", "ATC", "OVERLAP"])
    def test_other_estimands_recover_constant_effect(self, estimand):
        df = make_data(confounding=1.5, seed=7)
        result = run_pipeline(
            df, "t", "y", ["x"],
            config=BootstrapConfig(resample_count=20, weight_estimand=estimand, n_jobs=1),
        )
        assert abs(result.effect - TRUE_EFFECT) < 0.4

    @pytest.mark.parametrize("estimand, phrase", [
        ("ATT", "untreated units are weighted by the odds of treatment"),
        ("ATC", "treated units are weighted by the odds of no treatment"),
        ("OVERLAP", "treated units are weighted by 1 - e"),
    ])
    def test_executive_summary_describes_estimand_weights(self, estimand, phrase):
        result = run_pipeline(
            make_data(), "t", "y", ["x"],
            config=small_config(resample_count=5, weight_estimand=estimand),
        )
        text = result.executive_summary()
        assert phrase in text
        assert "inverse of the probability of the treatment it actually received" not in text

    def test_adjust_for_in_outcome_model(self):
        df = make_data(confounding=1.5, seed=7)
        result = run_pipeline(
            df, "t", "y", ["x"], adjust_for=["x"],
            config=BootstrapConfig(resample_count=20, n_jobs=1),
        )
        assert abs(result.effect - TRUE_EFFECT) < 0.2


class TestIPWBootstrapDeterminism:
    def test_same_seed_identical_distribution(self):
        df = make_data()
        cfg = small_config(random_seed=11)
        a = run_pipeline(df, "t", "y", ["x"], config=cfg)
        b = run_pipeline(df, "t", "y", ["x"], config=cfg)
        np.testing.assert_array_equal(a.distribution.estimates, b.distribution.estimates)

    def test_threaded_matches_serial(self):
        df = make_data()
        serial = run_pipeline(df, "t", "y", ["x"], config=small_config(n_jobs=1))
        threaded = run_pipeline(df, "t", "y", ["x"], config=small_config(n_jobs=4))
        assert threaded.distribution.resample_ids == serial.distribution.resample_ids
        np.testing.assert_allclose(
            threaded.distribution.estimates, serial.distribution.estimates, rtol=1e-12,
        )

    def test_different_seed_differs(self):
        df = make_data()
        a = run_pipeline(df, "t", "y", ["x"], config=small_config(random_seed=1))
        b = run_pipeline(df, "t", "y", ["x"], config=small_config(random_seed=2))
        assert not np.array_equal(a.distribution.bootstrap_estimates, b.distribution.bootstrap_estimates)


class TestIPWBootstrapApparent:
    def test_one_resample_plus_apparent(self):
        result = run_pipeline(
            make_data(), "t", "y", ["x"],
            config=BootstrapConfig(resample_count=1, include_apparent=True),
        )
        assert len(result.distribution) == 2
        assert result.distribution.resample_ids == [0, APPARENT]

    def test_without_apparent_effect_is_bootstrap_mean(self):
        result = run_pipeline(
            make_data(), "t", "y", ["x"],
            config=small_config(include_apparent=False),
        )
        assert len(result.distribution) == 20
        assert result.distribution.apparent is None
        assert result.effect == pytest.approx(result.distribution.mean)


class TestIPWBootstrapFailurePolicy:
    def test_skip_records_and_excludes_failures(self):
        result = run_pipeline(
            make_fragile_data(), "t", "y", ["x"],
            config=BootstrapConfig(resample_count=30, include_apparent=False, n_jobs=1),
        )
        assert result.n_skipped > 0
        assert result.n_skipped + len(result.distribution) == 30
        assert result.n_attempted == 30
        assert all(f.stage == "propensity" for f in result.failures)
        ids = [f.resample_id for f in result.failures]
        assert ids == sorted(ids)
        assert not set(ids) & set(result.distribution.resample_ids)
        assert "skipped" in result.summary()
        assert "excluded" in result.executive_summary()

    def test_skip_policy_threaded_matches_serial(self):
        cfg = BootstrapConfig(resample_count=30, include_apparent=False, n_jobs=1)
        serial = run_pipeline(make_fragile_data(), "t", "y", ["x"], config=cfg)
        threaded = run_pipeline(make_fragile_data(), "t", "y", ["x"], config=cfg.replace(n_jobs=3))
        assert [f.resample_id for f in threaded.failures] == [f.resample_id for f in serial.failures]
        assert threaded.distribution.resample_ids == serial.distribution.resample_ids

    @pytest.mark.parametrize("n_jobs", [1, 3])
    def test_abort_raises(self, n_jobs):
        est = IPWBootstrap(
            "t", "y", ["x"],
            config=BootstrapConfig(
                resample_count=30, include_apparent=False,
                failure_policy="abort", n_jobs=n_jobs,
            ),
        )
        with pytest.raises(FitFailureError) as info:
            est.fit(make_fragile_data())
        assert info.value.stage == "propensity"
        assert est.state is PipelineState.FAILED


class TestIPWBootstrapCancellation:
    def test_cancel_before_start_returns_empty(self):
        event = threading.Event()
        event.set()
        est = IPWBootstrap("t", "y", ["x"], config=small_config())
        result = est.fit(make_data(), cancel_event=event)
        assert result.status is RunStatus.CANCELLED
        assert len(result.distribution) == 0
        assert result.n_attempted == 0
        assert est.state is PipelineState.CANCELLED

    def test_cancel_after_three_resamples_keeps_completed_work(self):
        event = threading.Event()
        seen = []

        def on_resample(rid):
            seen.append(rid)
            if len(seen) == 3:
                event.set()

        result = run_pipeline(
            make_data(), "t", "y", ["x"], config=small_config(),
            cancel_event=event, on_resample=on_resample,
        )
        assert result.status is RunStatus.CANCELLED
        assert seen == [0, 1, 2]
        assert result.distribution.resample_ids == [0, 1, 2]
        assert "cancelled" in result.summary()

    def test_cancelled_estimates_match_full_run_prefix(self):
        event = threading.Event()
        calls = []

        def on_resample(rid):
            calls.append(rid)
            if len(calls) == 5:
                event.set()

        partial = run_pipeline(
            make_data(), "t", "y", ["x"], config=small_config(),
            cancel_event=event, on_resample=on_resample,
        )
        full = run_pipeline(make_data(), "t", "y", ["x"], config=small_config())
        np.testing.assert_array_equal(
            partial.distribution.estimates, full.distribution.estimates[:5],
        )

    def test_threaded_cancel_keeps_every_finished_resample(self, monkeypatch):
        lock = threading.Lock()
        finished = []
        real_fit_resample = pipeline_module.fit_resample

        def slow_fit_resample(resample, *args, **kwargs):
            time.sleep(0.05)
            fit = real_fit_resample(resample, *args, **kwargs)
            with lock:
                finished.append(resample.resample_id)
            return fit

        monkeypatch.setattr(pipeline_module, "fit_resample", slow_fit_resample)

        event = threading.Event()
        config = small_config(resample_count=40, n_jobs=4)
        result = run_pipeline(
            make_data(), "t", "y", ["x"], config=config,
            cancel_event=event, on_resample=lambda rid: event.set(),
        )

        assert result.status is RunStatus.CANCELLED
        assert len(finished) < 41
        assert len(result.distribution) == len(finished)
        assert result.n_attempted == len(finished)
        assert sorted(result.distribution.resample_ids, key=str) == sorted(finished, key=str)

        monkeypatch.setattr(pipeline_module, "fit_resample", real_fit_resample)
        full = run_pipeline(make_data(), "t", "y", ["x"], config=config.replace(n_jobs=1))
        partial = result.distribution.to_series()
        np.testing.assert_allclose(
            partial.to_numpy(), full.distribution.to_series()[partial.index].to_numpy(),
        )
