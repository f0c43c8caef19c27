"""
Bayesian inference for Poisson models with observation-level random effects.

This module provides the PyMC-based inference pipeline:
1. ModelSpec / build_model: immutable model description and pure builder
2. NUTSSampler: NUTS sampling with convergence diagnostics and retries
3. DiagnosticsComputer: Rhat, ESS, divergence rates (via ArviZ)
4. fit: build + sample + extract PosteriorDraws in one call
5. psis_loo / summarize_pareto_k: approximate LOO and its reliability

**Usage:**
```python
from inference import ModelSpec, SamplerConfig, fit

# 1. Describe the model
spec = ModelSpec(olre=True)

# 2. Fit on standardized data (raises ConvergenceError if retries fail)
result = fit(spec, table, SamplerConfig(draws=1000, chains=2), random_seed=1)

# 3. Inspect diagnostics and draws
print(result.summary.report)
print(result.draws)
```

**Key Classes:**
- PriorSpec: Prior specification (intercept, slope, sigma scales)
- ModelSpec: Model description (OLRE on/off, parameterisation)
- ModelBuilder: PyMC model assembly
- SamplerConfig: Sampling settings and convergence thresholds
- NUTSSampler: NUTS sampling orchestration
- ConvergenceReport / ConvergenceError: surfaced non-convergence
- InferenceSummary / FitResult: sampling results and draws
"""

from inference.model_builder import ModelBuilder, ModelSpec, PriorSpec, build_model
from inference.sampler import (
    ConvergenceError,
    ConvergenceReport,
    DiagnosticsComputer,
    FitResult,
    InferenceSummary,
    NUTSSampler,
    SamplerConfig,
    fit,
    psis_loo,
    summarize_pareto_k,
)

__all__ = [
    "ModelBuilder",
    "ModelSpec",
    "PriorSpec",
    "build_model",
    "ConvergenceError",
    "ConvergenceReport",
    "DiagnosticsComputer",
    "FitResult",
    "InferenceSummary",
    "NUTSSampler",
    "SamplerConfig",
    "fit",
    "psis_loo",
    "summarize_pareto_k",
]
