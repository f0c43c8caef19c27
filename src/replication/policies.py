"""
Posterior predictive replication policies for OLRE Poisson models.

Given posterior draws of (intercept, slope, sigma[, fitted offsets]) and a
covariate matrix, each policy produces one simulated count per observation
per draw:

    NO_OLRE       y_rep ~ Poisson(exp(a + X b))
    FIXED_OFFSET  y_rep ~ Poisson(exp(a + X b + e_fit))      # leaks y
    MIXED         e_new ~ Normal(0, sigma)
                  y_rep ~ Poisson(exp(a + X b + e_new))

The fitted offsets e_fit were estimated from the very counts being checked,
so FIXED_OFFSET replicates hug the data and look over-optimistic. Mixed
replication keeps the hyperparameter sigma from each draw but re-samples
the lower-level effect, marginalising it out of the predictive.

Offsets and counts come from two child generators of one seed. With
sigma = 0 the fresh offsets are exactly zero, so MIXED and NO_OLRE return
identical counts under the same seed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from replication.draws import PosteriorDraws

logger = logging.getLogger(__name__)

# exp(20.7) ~ 1e9 expected counts; keeps Poisson sampling finite
MAX_LOG_RATE = 20.7

SeedLike = Union[None, int, np.random.SeedSequence]


class ReplicationPolicy(str, Enum):
    """How the observation-level effect enters a replicate."""

    NO_OLRE = "no_olre"
    FIXED_OFFSET = "fixed_offset"
    MIXED = "mixed"


@dataclass(frozen=True, eq=False)
class ReplicationResult:
    """
    Replicated counts under one policy.

    Attributes
    ----------
    y_rep : NDArray[np.int64]
        Replicated counts, shape (S, n_obs)
    policy : ReplicationPolicy
        Policy that produced them
    valid : bool
        False when the policy is known to give an invalid predictive check
    warnings : list of str
        Human-readable caveats attached to the result
    """

    y_rep: NDArray[np.int64]
    policy: ReplicationPolicy
    valid: bool = True
    warnings: List[str] = field(default_factory=list)

    @property
    def n_draws(self) -> int:
        return int(self.y_rep.shape[0])

    @property
    def n_obs(self) -> int:
        return int(self.y_rep.shape[1])

    def __repr__(self) -> str:
        """String representation."""
        flag = "valid" if self.valid else "INVALID"
        return (
            f"ReplicationResult(policy={self.policy.value}, "
            f"shape={self.y_rep.shape}, {flag})"
        )


def _generators(
    rng: Optional[np.random.Generator],
    random_seed: SeedLike,
) -> Tuple[np.random.Generator, np.random.Generator]:
    """Independent (offset, count) generators."""
    if rng is None:
        rng = np.random.default_rng(random_seed)
    offset_rng, count_rng = rng.spawn(2)
    return offset_rng, count_rng


def simulate_counts(
    log_rate: NDArray[np.float64],
    rng: np.random.Generator,
) -> NDArray[np.int64]:
    """
    Poisson draws from a log-rate array.

    Parameters
    ----------
    log_rate : NDArray[np.float64]
        Log expected counts, any shape
    rng : np.random.Generator
        Source of randomness

    Returns
    -------
    counts : NDArray[np.int64]
        Same shape as ``log_rate``
    """
    rate = np.exp(np.minimum(log_rate, MAX_LOG_RATE))
    return rng.poisson(rate).astype(np.int64)


def fresh_offsets(
    sigma: NDArray[np.float64],
    n_obs: int,
    rng: np.random.Generator,
) -> NDArray[np.float64]:
    """
    New observation-level offsets, one per (draw, observation).

    Draw s uses Normal(0, sigma[s]). A zero sigma gives exact zeros.
    """
    z = rng.standard_normal((sigma.shape[0], n_obs))
    return z * sigma[:, None]


def replicate(
    draws: PosteriorDraws,
    X: NDArray[np.float64],
    policy: Union[ReplicationPolicy, str] = ReplicationPolicy.MIXED,
    rng: Optional[np.random.Generator] = None,
    random_seed: SeedLike = None,
) -> ReplicationResult:
    """
    Generate a replicated dataset under one policy.

    Parameters
    ----------
    draws : PosteriorDraws
        Posterior draws, S of them
    X : NDArray[np.float64]
        Covariates on the scale used for fitting, shape (n_obs, n_covariates).
        For MIXED and NO_OLRE these may be new or held-out rows.
    policy : ReplicationPolicy or str
        Replication policy. Default MIXED.
    rng : np.random.Generator, optional
        Parent generator. Two children are spawned from it.
    random_seed : int or SeedSequence, optional
        Seed used when ``rng`` is not given.

    Returns
    -------
    result : ReplicationResult
        y_rep of shape (S, n_obs)

    Raises
    ------
    ValueError
        If FIXED_OFFSET is requested without fitted offsets matching X.
    """
    policy = ReplicationPolicy(policy)
    eta = draws.linear_predictor(X)
    n_obs = eta.shape[1]
    offset_rng, count_rng = _generators(rng, random_seed)

    warnings: List[str] = []
    valid = True

    if policy is ReplicationPolicy.NO_OLRE:
        if draws.has_olre:
            warnings.append(
                "Observation-level effect ignored although sigma > 0; "
                "replicates will be under-dispersed."
            )
        log_rate = eta

    elif policy is ReplicationPolicy.FIXED_OFFSET:
        if draws.olre is None:
            raise ValueError(
                "FIXED_OFFSET replication needs fitted offsets; "
                "the draws were extracted without them."
            )
        if draws.olre.shape[1] != n_obs:
            raise ValueError(
                f"Fitted offsets cover {draws.olre.shape[1]} observations "
                f"but X has {n_obs} rows."
            )
        valid = False
        warnings.append(
            "Fitted offsets were estimated from the observed counts; "
            "reusing them leaks the response into the replicate and "
            "gives over-optimistic intervals."
        )
        logger.warning(
            "FIXED_OFFSET replication requested for %d observations; "
            "result is marked invalid",
            n_obs,
        )
        log_rate = eta + draws.olre

    else:
        log_rate = eta + fresh_offsets(draws.sigma, n_obs, offset_rng)

    y_rep = simulate_counts(log_rate, count_rng)
    logger.debug("Replicated %s: shape %s", policy.value, y_rep.shape)

    return ReplicationResult(y_rep=y_rep, policy=policy, valid=valid, warnings=warnings)


def replicate_all(
    draws: PosteriorDraws,
    X: NDArray[np.float64],
    random_seed: SeedLike = None,
) -> Dict[ReplicationPolicy, ReplicationResult]:
    """
    Run every policy with the same seed.

    Policies that cannot run on these draws (FIXED_OFFSET without fitted
    offsets) are skipped and logged.
    """
    results: Dict[ReplicationPolicy, ReplicationResult] = {}
    for policy in ReplicationPolicy:
        if policy is ReplicationPolicy.FIXED_OFFSET and draws.olre is None:
            logger.info("Skipping %s: no fitted offsets in draws", policy.value)
            continue
        results[policy] = replicate(draws, X, policy, random_seed=random_seed)
    return results
