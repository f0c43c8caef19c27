"""
Posterior predictive replication for models with observation-level random effects.

**Draws (draws.py):**
- PosteriorDraws: immutable, flattened (chain x draw) parameter arrays

**Policies (policies.py):**
- NO_OLRE: ignore the latent offset (under-dispersed baseline)
- FIXED_OFFSET: reuse fitted offsets (leaks y; always marked invalid)
- MIXED: re-sample offsets from Normal(0, sigma) per draw (correct)

**Checks (checks.py):**
- Per-observation credible intervals, coverage, outside counts
- Posterior predictive p-values
- Offset/response correlation for detecting leakage

**Usage:**
```python
from replication import PosteriorDraws, ReplicationPolicy, replicate
from replication.checks import count_outside

draws = PosteriorDraws.from_idata(idata)
mixed = replicate(draws, X, ReplicationPolicy.MIXED, random_seed=1)
print(count_outside(y, mixed.y_rep, prob=0.9))
```
"""

from replication.draws import PosteriorDraws
from replication.policies import (
    ReplicationPolicy,
    ReplicationResult,
    replicate,
    replicate_all,
    simulate_counts,
)

__all__ = [
    "PosteriorDraws",
    "ReplicationPolicy",
    "ReplicationResult",
    "replicate",
    "replicate_all",
    "simulate_counts",
]
