"""
Synthetic data and calibration studies for OLRE replication.

Generates Poisson-lognormal datasets from known parameters so replication
policies can be checked against the truth:

    x_i ~ Normal(0, s_x)
    e_i ~ Normal(0, sigma)
    y_i ~ Poisson(exp(a + x_i b + e_i))

Key components:
- Dataset generation with the latent offsets returned alongside
- Oracle posteriors concentrated at the truth (no MCMC needed)
- Coverage study: per-trial interval coverage of observed and fresh
  held-out counts under every replication policy
"""

from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from observations import ObservationTable, from_arrays
from replication import PosteriorDraws, ReplicationPolicy, replicate
from replication.checks import coverage, interval_widths
from replication.policies import simulate_counts

DrawSource = Callable[[ObservationTable, NDArray[np.float64], np.random.Generator], PosteriorDraws]


@dataclass(frozen=True)
class SyntheticTruth:
    """
    Known generating parameters.

    Attributes
    ----------
    intercept : float
        Log-scale intercept a
    slope : tuple of float
        Covariate coefficients b
    sigma : float
        OLRE standard deviation (0 gives plain Poisson data)
    """

    intercept: float = 1.5
    slope: Tuple[float, ...] = (0.5,)
    sigma: float = 0.8

    def __post_init__(self) -> None:
        if self.sigma < 0:
            raise ValueError(f"sigma must be non-negative. Got {self.sigma}")
        object.__setattr__(self, "slope", tuple(np.atleast_1d(self.slope).tolist()))

    @property
    def n_covariates(self) -> int:
        return len(self.slope)


def simulate_dataset(
    truth: SyntheticTruth,
    n_obs: int,
    rng: np.random.Generator,
    covariate_sd: float = 1.0,
    X: Optional[NDArray[np.float64]] = None,
) -> Tuple[ObservationTable, NDArray[np.float64]]:
    """
    Draw one synthetic dataset.

    Parameters
    ----------
    truth : SyntheticTruth
        Generating parameters
    n_obs : int
        Number of observations
    rng : np.random.Generator
        Source of randomness
    covariate_sd : float
        Standard deviation of simulated covariates. Default 1.0.
    X : NDArray[np.float64], optional
        Fixed covariates to use instead of simulated ones

    Returns
    -------
    table : ObservationTable
        Counts and covariates
    latent : NDArray[np.float64]
        True per-observation offsets, shape (n_obs,)
    """
    if n_obs <= 0:
        raise ValueError(f"n_obs must be positive. Got {n_obs}")

    if X is None:
        X = rng.normal(0.0, covariate_sd, size=(n_obs, truth.n_covariates))
    X = np.asarray(X, dtype=np.float64).reshape(n_obs, truth.n_covariates)

    latent = rng.normal(0.0, 1.0, size=n_obs) * truth.sigma
    log_rate = truth.intercept + X @ np.asarray(truth.slope) + latent
    y = simulate_counts(log_rate, rng)

    return from_arrays(y, X), latent


def oracle_draws(
    truth: SyntheticTruth,
    n_draws: int,
    latent: Optional[NDArray[np.float64]] = None,
    jitter: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> PosteriorDraws:
    """
    Posterior draws concentrated at the true parameters.

    Parameters
    ----------
    truth : SyntheticTruth
        Generating parameters
    n_draws : int
        Number of draws S
    latent : NDArray[np.float64], optional
        True offsets; when given they become the "fitted" offsets
    jitter : float
        Normal noise added to every parameter, mimicking posterior spread.
        sigma is reflected at zero.
    rng : np.random.Generator, optional
        Needed when ``jitter > 0``
    """
    rng = rng or np.random.default_rng()
    p = truth.n_covariates

    def noise(shape):
        return rng.normal(0.0, jitter, size=shape) if jitter > 0 else np.zeros(shape)

    intercept = truth.intercept + noise(n_draws)
    slope = np.asarray(truth.slope)[None, :] + noise((n_draws, p))
    sigma = np.abs(truth.sigma + noise(n_draws)) if truth.sigma > 0 else np.zeros(n_draws)

    olre = None
    if latent is not None:
        latent = np.asarray(latent, dtype=np.float64)
        olre = latent[None, :] + noise((n_draws, latent.shape[0]))

    return PosteriorDraws(intercept=intercept, slope=slope, sigma=sigma, olre=olre)


def extreme_value_table() -> ObservationTable:
    """
    Ten observations with one extreme count that appears twice.

    Small counts around 4 plus a duplicated 30: a plain Poisson fit cannot
    cover both ends, while an observation-level effect can. The 30s sit in
    the middle of the covariate range (rows 4 and 5), so a slope cannot
    absorb them.
    """
    y = np.array([2, 3, 3, 4, 30, 30, 4, 5, 5, 6])
    x = np.array([-1.2, -0.9, -0.5, -0.3, 0.0, 0.2, 0.4, 0.7, 0.9, 1.1])
    return from_arrays(y, x)


def _mcmc_draws(table, latent, rng, spec, config):
    # Imported lazily so oracle studies never load PyMC
    from inference.sampler import fit

    seed = int(rng.integers(0, 2**31 - 1))
    return fit(spec, table, config, random_seed=seed).draws


def mcmc_draw_source(spec=None, config=None) -> DrawSource:
    """Draw source that fits the model by NUTS on each synthetic dataset."""
    from inference.model_builder import ModelSpec

    return partial(_mcmc_draws, spec=spec or ModelSpec(), config=config)


class CoverageStudy:
    """
    Repeated synthetic trials measuring predictive interval coverage.

    Each trial simulates a dataset, obtains posterior draws from
    ``draw_source``, replicates under every policy, and records:
    - coverage of the observed counts (the in-sample check)
    - coverage of fresh counts drawn at the same covariates with new
      offsets (the true out-of-sample target)
    - mean interval width

    Attributes
    ----------
    truth : SyntheticTruth
        Generating parameters
    n_obs : int
        Observations per trial
    n_trials : int
        Number of trials
    prob : float
        Interval mass
    n_draws : int
        Posterior draws per trial (oracle source only)
    """

    def __init__(
        self,
        truth: SyntheticTruth,
        n_obs: int = 100,
        n_trials: int = 20,
        prob: float = 0.9,
        n_draws: int = 2000,
        draw_source: Optional[DrawSource] = None,
        policies: Sequence[ReplicationPolicy] = tuple(ReplicationPolicy),
    ) -> None:
        """
        Initialize coverage study.

        Parameters
        ----------
        truth : SyntheticTruth
            Generating parameters
        n_obs : int
            Observations per trial. Default 100.
        n_trials : int
            Number of trials. Default 20.
        prob : float
            Interval mass. Default 0.9.
        n_draws : int
            Draws per trial for the default oracle source. Default 2000.
        draw_source : callable, optional
            ``draw_source(table, latent, rng) -> PosteriorDraws``.
            If None, oracle draws at the truth with fitted offsets set to
            the true latent values.
        policies : sequence of ReplicationPolicy
            Policies to evaluate. Default all.
        """
        if n_obs <= 0 or n_trials <= 0 or n_draws <= 0:
            raise ValueError(
                f"All sizes must be positive. Got "
                f"n_obs={n_obs}, n_trials={n_trials}, n_draws={n_draws}"
            )
        if not (0.0 < prob < 1.0):
            raise ValueError(f"prob must be in (0, 1). Got {prob}")

        self.truth = truth
        self.n_obs = n_obs
        self.n_trials = n_trials
        self.prob = prob
        self.n_draws = n_draws
        self.draw_source = draw_source or self._oracle_source
        self.policies = tuple(ReplicationPolicy(p) for p in policies)
        self.trials: List[Dict[str, Dict[str, float]]] = []

    def _oracle_source(self, table, latent, rng) -> PosteriorDraws:
        return oracle_draws(self.truth, self.n_draws, latent=latent)

    def run_trial(self, rng: np.random.Generator) -> Dict[str, Dict[str, float]]:
        """One simulate / draw / replicate cycle."""
        table, latent = simulate_dataset(self.truth, self.n_obs, rng)
        fresh, _ = simulate_dataset(self.truth, self.n_obs, rng, X=table.X)
        draws = self.draw_source(table, latent, rng)

        trial = {}
        for policy in self.policies:
            if policy is ReplicationPolicy.FIXED_OFFSET and draws.olre is None:
                continue
            result = replicate(draws, table.X, policy, rng=rng)
            trial[policy.value] = {
                "coverage_observed": coverage(table.y, result.y_rep, self.prob),
                "coverage_heldout": coverage(fresh.y, result.y_rep, self.prob),
                "mean_width": float(np.mean(interval_widths(result.y_rep, self.prob))),
            }
        return trial

    def run(self, random_seed=None) -> List[Dict[str, Dict[str, float]]]:
        """
        Run all trials.

        Returns
        -------
        trials : list of dict
            Per trial, per policy value: coverage_observed,
            coverage_heldout, mean_width
        """
        rng = np.random.default_rng(random_seed)
        self.trials = [self.run_trial(rng) for _ in range(self.n_trials)]
        return self.trials

    def summary(self) -> Dict[str, Dict[str, float]]:
        """Mean of each statistic across trials, per policy."""
        if not self.trials:
            raise RuntimeError("Study has not been run. Call .run() first.")

        out: Dict[str, Dict[str, float]] = {}
        for policy in {name for trial in self.trials for name in trial}:
            rows = [trial[policy] for trial in self.trials if policy in trial]
            out[policy] = {
                stat: float(np.mean([row[stat] for row in rows])) for stat in rows[0]
            }
        return out

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"CoverageStudy(truth={self.truth}, n_obs={self.n_obs}, "
            f"n_trials={self.n_trials}, prob={self.prob})"
        )
