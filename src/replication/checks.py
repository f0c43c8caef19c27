"""
Posterior predictive check statistics on replicated count matrices.

All functions are pure: they take observed counts and y_rep arrays of
shape (S, n_obs) and return numpy arrays or plain dicts. Plotting is left
to the caller.
"""

from typing import Dict, Mapping, Tuple

import numpy as np
from numpy.typing import NDArray

from replication.draws import PosteriorDraws
from replication.policies import ReplicationPolicy, ReplicationResult


def _check_prob(prob: float) -> None:
    if not (0.0 < prob < 1.0):
        raise ValueError(f"prob must be in (0, 1). Got {prob}")


def _check_shapes(y: NDArray, y_rep: NDArray) -> None:
    if y_rep.ndim != 2 or y_rep.shape[1] != y.shape[0]:
        raise ValueError(
            f"y_rep must have shape (S, {y.shape[0]}). Got {y_rep.shape}"
        )


def credible_intervals(
    y_rep: NDArray,
    prob: float = 0.9,
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Equal-tailed per-observation predictive intervals.

    Parameters
    ----------
    y_rep : NDArray
        Replicated counts, shape (S, n_obs)
    prob : float
        Interval mass. Default 0.9.

    Returns
    -------
    lower, upper : NDArray[np.float64]
        Quantiles (1-prob)/2 and (1+prob)/2, each of shape (n_obs,)
    """
    _check_prob(prob)
    tail = (1.0 - prob) / 2.0
    lower, upper = np.quantile(np.asarray(y_rep), [tail, 1.0 - tail], axis=0)
    return lower, upper


def interval_widths(y_rep: NDArray, prob: float = 0.9) -> NDArray[np.float64]:
    lower, upper = credible_intervals(y_rep, prob)
    return upper - lower


def outside_interval(y: NDArray, y_rep: NDArray, prob: float = 0.9) -> NDArray[np.bool_]:
    """Boolean mask of observations falling outside their interval."""
    y = np.asarray(y)
    _check_shapes(y, np.asarray(y_rep))
    lower, upper = credible_intervals(y_rep, prob)
    return (y < lower) | (y > upper)


def count_outside(y: NDArray, y_rep: NDArray, prob: float = 0.9) -> int:
    return int(np.sum(outside_interval(y, y_rep, prob)))


def coverage(y: NDArray, y_rep: NDArray, prob: float = 0.9) -> float:
    """Fraction of observations inside their predictive interval."""
    return float(1.0 - np.mean(outside_interval(y, y_rep, prob)))


def _dispersion(values: NDArray, axis=None) -> NDArray:
    mean = np.mean(values, axis=axis)
    var = np.var(values, axis=axis, ddof=1)
    return var / np.maximum(mean, 1e-12)


def ppc_pvalues(y: NDArray, y_rep: NDArray) -> Dict[str, float]:
    """
    Posterior predictive p-values for whole-dataset statistics.

    Each p-value is P(T(y_rep) >= T(y)) over draws. Values near 0 or 1
    indicate the model cannot reproduce that feature of the data.

    Returns
    -------
    pvalues : Dict[str, float]
        Keys: mean, variance, max, zeros, dispersion
    """
    y = np.asarray(y, dtype=np.float64)
    y_rep = np.asarray(y_rep, dtype=np.float64)
    _check_shapes(y, y_rep)

    stats = {
        "mean": (np.mean(y), np.mean(y_rep, axis=1)),
        "variance": (np.var(y, ddof=1), np.var(y_rep, axis=1, ddof=1)),
        "max": (np.max(y), np.max(y_rep, axis=1)),
        "zeros": (np.mean(y == 0), np.mean(y_rep == 0, axis=1)),
        "dispersion": (_dispersion(y), _dispersion(y_rep, axis=1)),
    }

    return {
        name: float(np.mean(rep_stat >= obs_stat))
        for name, (obs_stat, rep_stat) in stats.items()
    }


def olre_response_correlation(
    draws: PosteriorDraws,
    y: NDArray,
    X: NDArray[np.float64],
) -> float:
    """
    Correlation between fitted offsets and the response they were fitted to.

    Compares the posterior-mean offset per observation with the log-scale
    residual log(y + 0.5) - mean(a + X b). A value near 1 means the offsets
    have absorbed the observed counts, so replicates that reuse them will
    reproduce the data by construction.

    Returns NaN when the draws carry no fitted offsets or either side is
    constant.
    """
    if draws.olre is None:
        return float("nan")

    y = np.asarray(y, dtype=np.float64)
    if draws.olre.shape[1] != y.shape[0]:
        raise ValueError(
            f"Fitted offsets cover {draws.olre.shape[1]} observations, "
            f"y has {y.shape[0]}"
        )

    offset_mean = draws.olre.mean(axis=0)
    residual = np.log(y + 0.5) - draws.linear_predictor(X).mean(axis=0)

    if np.std(offset_mean) == 0 or np.std(residual) == 0:
        return float("nan")
    return float(np.corrcoef(offset_mean, residual)[0, 1])


def compare_policies(
    y: NDArray,
    results: Mapping[ReplicationPolicy, ReplicationResult],
    prob: float = 0.9,
) -> Dict[str, Dict]:
    """
    Side-by-side interval summary for several replication policies.

    Returns
    -------
    summary : Dict[str, Dict]
        Per policy value: n_outside, coverage, mean_width, valid, warnings
    """
    summary = {}
    for policy, result in results.items():
        summary[policy.value] = {
            "n_outside": count_outside(y, result.y_rep, prob),
            "coverage": coverage(y, result.y_rep, prob),
            "mean_width": float(np.mean(interval_widths(result.y_rep, prob))),
            "valid": result.valid,
            "warnings": list(result.warnings),
        }
    return summary
