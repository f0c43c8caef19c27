"""
Exact leave-one-out cross-validated replication.

- make_fold / make_folds: pure partition factory with training-only
  standardization
- fit_fold: refit without the held-out row, then mixed replication and
  held-out log predictive density for that row
- run_loo: N independent folds, serial or in a process pool
- LooResult: per-fold results, failed folds reported separately

**Usage:**
```python
from crossval import run_loo

loo = run_loo(table, spec, config, workers=4, random_seed=7)
print(loo.failed)            # non-converged folds
y_rep = loo.y_rep()          # (S, N); failed columns are -1
print(loo.summary(table.y))
```
"""

from crossval.loo import (
    Fold,
    FoldResult,
    LooResult,
    fit_fold,
    heldout_log_density,
    make_fold,
    make_folds,
    run_loo,
)

__all__ = [
    "Fold",
    "FoldResult",
    "LooResult",
    "fit_fold",
    "heldout_log_density",
    "make_fold",
    "make_folds",
    "run_loo",
]
