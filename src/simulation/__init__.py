"""
Synthetic data and calibration studies for OLRE replication.

This module provides known-truth scenarios for checking replication policies:
- simulate_dataset: Poisson-lognormal data with the latent offsets
- oracle_draws: posterior draws concentrated at the truth
- extreme_value_table: small dataset with a duplicated extreme count
- CoverageStudy: repeated trials of interval coverage and width

**Usage:**
```python
from simulation import CoverageStudy, SyntheticTruth

study = CoverageStudy(SyntheticTruth(intercept=2.0, sigma=0.8), n_obs=200, n_trials=10)
study.run(random_seed=3)
print(study.summary()["mixed"]["coverage_heldout"])
```
"""

from simulation.simulator import (
    CoverageStudy,
    SyntheticTruth,
    extreme_value_table,
    mcmc_draw_source,
    oracle_draws,
    simulate_dataset,
)

__all__ = [
    "CoverageStudy",
    "SyntheticTruth",
    "extreme_value_table",
    "mcmc_draw_source",
    "oracle_draws",
    "simulate_dataset",
]
