"""
Inverse probability weighting — basic example
=============================================
Estimate the ATE of a binary treatment (further education) on income
whilst adjusting for a confounding variable (ability) via propensity
weighting, with a bootstrap for the standard error.
"""

import numpy as np
import pandas as pd
from ipwboot import BootstrapConfig, IPWBootstrap

RNG = np.random.default_rng(0)
N = 3_000

# ── 1. Simulate data ──────────────────────────────────────────────────────────
ability   = RNG.normal(size=N)
p_treat   = 1 / (1 + np.exp(-0.8 * ability))
education = (RNG.uniform(size=N) < p_treat).astype(float)   # binary 0/1
income    = 2.0 * education + 0.8 * ability + RNG.normal(size=N)

df = pd.DataFrame({"ability": ability, "education": education, "income": income})

# ── 2. Estimate via bootstrap IPW ─────────────────────────────────────────────
result = IPWBootstrap(
    treatment="education",
    outcome="income",
    covariates=["ability"],
    config=BootstrapConfig(resample_count=500),
).fit(df)

print(result.summary())
print(result.executive_summary())
