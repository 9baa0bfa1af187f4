"""
Skipped resamples and cancellation
==================================
Rare treatment makes some bootstrap resamples contain no treated units.
Under the default ``skip`` policy those resamples are reported, not hidden.
A run can also be stopped part-way; completed work is kept.
"""

import logging
import threading

import numpy as np
import pandas as pd
from ipwboot import BootstrapConfig, FitFailureError, run_pipeline

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

RNG = np.random.default_rng(2)
N = 60

x = RNG.normal(size=N)
t = np.zeros(N)
t[RNG.choice(N, size=2, replace=False)] = 1.0
y = 1.5 * t + x + RNG.normal(size=N)
df = pd.DataFrame({"x": x, "t": t, "y": y})

# ── Skip (default) ────────────────────────────────────────────────────────────
result = run_pipeline(df, "t", "y", ["x"], config=BootstrapConfig(resample_count=100))
print(f"{result.n_skipped} of {result.n_requested} resamples skipped")
for failure in result.failures[:3]:
    print(f"  resample {failure.resample_id}: {failure.stage}: {failure.message}")

# ── Abort ─────────────────────────────────────────────────────────────────────
try:
    run_pipeline(df, "t", "y", ["x"],
                 config=BootstrapConfig(resample_count=100, failure_policy="abort"))
except FitFailureError as exc:
    print(f"Aborted on resample {exc.resample_id}: {exc}")

# ── Cancel after 25 resamples ─────────────────────────────────────────────────
stop = threading.Event()
done = []

def progress(resample_id):
    done.append(resample_id)
    if len(done) >= 25:
        stop.set()

partial = run_pipeline(
    df, "t", "y", ["x"],
    config=BootstrapConfig(resample_count=1_000, n_jobs=1),
    cancel_event=stop, on_resample=progress,
)
print(f"status={partial.status.value}, kept {len(partial.distribution)} estimates")
