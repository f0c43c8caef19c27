"""
Exact leave-one-out cross-validated replication.

For N observations the loop performs exactly N independent refits. Fold i
drops row i, standardizes covariates with statistics from the remaining
rows only, refits the model, and applies mixed replication to the held-out
covariate row using parameters estimated without it:

    theta^(s) ~ p(theta | y_{-i})
    e_new^(s) ~ Normal(0, sigma^(s))
    y_rep_i^(s) ~ Poisson(exp(a^(s) + x_i b^(s) + e_new^(s)))

Folds share no mutable state, so they can run in a process pool. A fold
whose refit does not converge is reported in ``LooResult.failed`` and its
column is masked, never merged into the replicate matrix.
"""

import dataclasses
import logging
import multiprocessing
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from pymc.exceptions import SamplingError
from scipy.special import logsumexp
from scipy.stats import poisson

from inference.model_builder import ModelSpec
from inference.sampler import ConvergenceError, ConvergenceReport, SamplerConfig, fit
from observations import ObservationTable, Standardizer
from replication import PosteriorDraws, ReplicationPolicy, replicate
from replication.checks import count_outside, coverage
from replication.policies import MAX_LOG_RATE, fresh_offsets

logger = logging.getLogger(__name__)

FAILED_FOLD = -1


@dataclass(frozen=True, eq=False)
class Fold:
    """
    One leave-one-out partition.

    Attributes
    ----------
    index : int
        Held-out row
    train : ObservationTable
        Remaining rows on the raw covariate scale
    test_y : int
        Held-out count
    test_X_raw : NDArray[np.float64]
        Held-out covariates on the raw scale, shape (1, n_covariates)
    standardizer : Standardizer
        Fitted on ``train.X`` only
    """

    index: int
    train: ObservationTable
    test_y: int
    test_X_raw: NDArray[np.float64]
    standardizer: Standardizer

    @property
    def train_X(self) -> NDArray[np.float64]:
        return self.standardizer.transform(self.train.X)

    @property
    def test_X(self) -> NDArray[np.float64]:
        return self.standardizer.transform(self.test_X_raw)

    def training_table(self) -> ObservationTable:
        """Training rows with standardized covariates, ready to fit."""
        return self.train.with_covariates(self.train_X)


@dataclass
class FoldResult:
    """Outcome of one fit + predict cycle."""

    index: int
    converged: bool
    y_rep: Optional[NDArray[np.int64]] = None
    elpd: float = float("nan")
    report: Optional[ConvergenceReport] = None
    attempts: int = 0
    elapsed: float = 0.0
    error: Optional[str] = None
    standardizer: Optional[Standardizer] = None

    @property
    def n_draws(self) -> int:
        return 0 if self.y_rep is None else int(self.y_rep.shape[0])


def make_fold(table: ObservationTable, index: int, standardize: bool = True) -> Fold:
    """
    Build the partition that holds out row ``index``.

    Standardization statistics come from the training rows alone; the
    held-out row is transformed with them but never contributes to them.
    """
    train = table.drop(index)
    if standardize:
        standardizer = Standardizer.fit(train.X)
    else:
        standardizer = Standardizer.identity(table.n_covariates)

    return Fold(
        index=index,
        train=train,
        test_y=int(table.y[index]),
        test_X_raw=table.X[index : index + 1],
        standardizer=standardizer,
    )


def make_folds(table: ObservationTable, standardize: bool = True) -> Iterator[Fold]:
    """Yield the N leave-one-out folds in row order."""
    if table.n_obs < 2:
        raise ValueError(f"Leave-one-out needs at least 2 observations. Got {table.n_obs}")
    for index in range(table.n_obs):
        yield make_fold(table, index, standardize=standardize)


def heldout_log_density(
    draws: PosteriorDraws,
    X_test: NDArray[np.float64],
    y_test: NDArray[np.int64],
    rng: np.random.Generator,
) -> NDArray[np.float64]:
    """
    Monte Carlo log predictive density of held-out counts.

    The observation-level effect of a held-out row is unknown, so each draw
    pairs its parameters with a fresh offset from Normal(0, sigma):

        log p(y_i | y_{-i}) ~ logsumexp_s log Poisson(y_i | exp(eta_s + e_s)) - log S

    Returns
    -------
    elpd : NDArray[np.float64]
        One value per held-out row, shape (n_test,)
    """
    y_test = np.atleast_1d(np.asarray(y_test))
    eta = draws.linear_predictor(X_test)
    log_rate = eta + fresh_offsets(draws.sigma, eta.shape[1], rng)
    rate = np.exp(np.minimum(log_rate, MAX_LOG_RATE))
    log_lik = poisson.logpmf(y_test[None, :], rate)
    return logsumexp(log_lik, axis=0) - np.log(draws.n_draws)


def fit_fold(
    fold: Fold,
    spec: Optional[ModelSpec] = None,
    config: Optional[SamplerConfig] = None,
    random_seed=None,
) -> FoldResult:
    """
    Refit on the training partition and replicate the held-out row.

    Parameters
    ----------
    fold : Fold
        Partition from ``make_fold``
    spec : ModelSpec, optional
        Model description. Fitted offsets are never retained here.
    config : SamplerConfig, optional
        Sampling settings
    random_seed : int or SeedSequence, optional
        Seed for this fold

    Returns
    -------
    result : FoldResult
        ``converged=False`` with the error message when the refit fails
        every retry (the last report is attached) or sampling itself
        fails, for example on a bad initial energy.
    """
    spec = dataclasses.replace(spec or ModelSpec(), retain_olre=False)
    if not isinstance(random_seed, np.random.SeedSequence):
        random_seed = np.random.SeedSequence(random_seed)
    fit_seed, rep_seed = random_seed.spawn(2)

    start = time.time()
    try:
        result = fit(spec, fold.training_table(), config, random_seed=fit_seed)
    except ConvergenceError as exc:
        logger.warning("Fold %d did not converge: %s", fold.index, exc)
        return FoldResult(
            index=fold.index,
            converged=False,
            report=exc.report,
            attempts=exc.attempts,
            elapsed=time.time() - start,
            error=str(exc),
            standardizer=fold.standardizer,
        )
    except (SamplingError, FloatingPointError, ValueError) as exc:
        logger.warning("Fold %d failed to sample: %s: %s", fold.index, type(exc).__name__, exc)
        return FoldResult(
            index=fold.index,
            converged=False,
            elapsed=time.time() - start,
            error=f"{type(exc).__name__}: {exc}",
            standardizer=fold.standardizer,
        )

    rng = np.random.default_rng(rep_seed)
    draws = result.draws
    mixed = replicate(draws, fold.test_X, ReplicationPolicy.MIXED, rng=rng)
    elpd = heldout_log_density(draws, fold.test_X, np.array([fold.test_y]), rng)

    elapsed = time.time() - start
    logger.debug("Fold %d finished in %.1fs", fold.index, elapsed)

    return FoldResult(
        index=fold.index,
        converged=True,
        y_rep=mixed.y_rep[:, 0],
        elpd=float(elpd[0]),
        report=result.summary.report,
        attempts=result.summary.attempts,
        elapsed=elapsed,
        standardizer=fold.standardizer,
    )


FoldFitter = Callable[..., FoldResult]


def _run_fold(args: Tuple[Fold, np.random.SeedSequence], fold_fitter: FoldFitter, spec, config):
    fold, seed = args
    return fold_fitter(fold, spec=spec, config=config, random_seed=seed)


class LooResult:
    """
    Collected leave-one-out results, one per observation.

    Attributes
    ----------
    folds : list of FoldResult
        All folds in row order, failed ones included
    n_obs : int
        Number of observations
    """

    def __init__(self, folds: List[FoldResult], n_obs: int) -> None:
        if len(folds) != n_obs:
            raise ValueError(f"Expected {n_obs} fold results. Got {len(folds)}")
        if [f.index for f in folds] != list(range(n_obs)):
            raise ValueError("Fold results must be in row order")
        self.folds = folds
        self.n_obs = n_obs

    @property
    def failed(self) -> List[int]:
        """Indices of folds whose refit did not converge."""
        return [f.index for f in self.folds if not f.converged]

    @property
    def valid_mask(self) -> NDArray[np.bool_]:
        return np.array([f.converged for f in self.folds], dtype=bool)

    @property
    def n_draws(self) -> int:
        """Common draw count across converged folds."""
        counts = [f.n_draws for f in self.folds if f.converged]
        if not counts:
            return 0
        return min(counts)

    def y_rep(self) -> NDArray[np.int64]:
        """
        Held-out replicates assembled as (S, n_obs).

        Columns of failed folds are filled with -1; use ``valid_mask`` to
        select usable columns. Folds with more draws are truncated to the
        common count.

        Raises
        ------
        ValueError
            If no fold converged.
        """
        n_draws = self.n_draws
        if n_draws == 0:
            raise ValueError("No fold converged; there are no held-out replicates")

        matrix = np.full((n_draws, self.n_obs), FAILED_FOLD, dtype=np.int64)
        for fold in self.folds:
            if fold.converged:
                matrix[:, fold.index] = fold.y_rep[:n_draws]
        return matrix

    @property
    def elpd_pointwise(self) -> NDArray[np.float64]:
        return np.array([f.elpd if f.converged else np.nan for f in self.folds])

    @property
    def elpd_loo(self) -> float:
        """Sum of held-out log predictive densities over converged folds."""
        return float(np.nansum(self.elpd_pointwise))

    def standardization_stats(self) -> List[Dict[str, NDArray[np.float64]]]:
        return [
            {
                "mean": f.standardizer.mean if f.standardizer is not None else None,
                "scale": f.standardizer.scale if f.standardizer is not None else None,
            }
            for f in self.folds
        ]

    def summary(self, y: NDArray[np.int64], prob: float = 0.9) -> Dict:
        """
        Interval summary over converged folds.

        Returns
        -------
        summary : Dict
            n_folds, n_failed, failed, elpd_loo, and, when at least one
            fold converged, n_outside and coverage over valid columns.
        """
        y = np.asarray(y)
        out = {
            "n_folds": len(self.folds),
            "n_failed": len(self.failed),
            "failed": self.failed,
            "elpd_loo": self.elpd_loo,
        }
        mask = self.valid_mask
        if mask.any():
            y_rep = self.y_rep()[:, mask]
            out["n_outside"] = count_outside(y[mask], y_rep, prob)
            out["coverage"] = coverage(y[mask], y_rep, prob)
        return out

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"LooResult(n_obs={self.n_obs}, failed={len(self.failed)}, "
            f"n_draws={self.n_draws})"
        )


def run_loo(
    table: ObservationTable,
    spec: Optional[ModelSpec] = None,
    config: Optional[SamplerConfig] = None,
    workers: int = 1,
    random_seed=None,
    fold_fitter: FoldFitter = fit_fold,
    standardize: bool = True,
) -> LooResult:
    """
    Run exact leave-one-out cross-validated replication.

    Parameters
    ----------
    table : ObservationTable
        Observations on the raw covariate scale
    spec : ModelSpec, optional
        Model description. Default OLRE model.
    config : SamplerConfig, optional
        Sampling settings. Keep ``cores=1`` when ``workers > 1``.
    workers : int
        Number of worker processes. Default 1 (serial).
    random_seed : int, optional
        Root seed; each fold receives an independent child sequence.
    fold_fitter : callable
        ``fold_fitter(fold, spec=, config=, random_seed=) -> FoldResult``.
        Must be a module-level function when ``workers > 1``.
    standardize : bool
        Standardize covariates per fold. Default True.

    Returns
    -------
    result : LooResult
        Exactly ``table.n_obs`` fold results.
    """
    if workers < 1:
        raise ValueError(f"workers must be >= 1. Got {workers}")

    folds = list(make_folds(table, standardize=standardize))
    seeds = np.random.SeedSequence(random_seed).spawn(len(folds))
    worker = partial(_run_fold, fold_fitter=fold_fitter, spec=spec, config=config)
    args = list(zip(folds, seeds))

    logger.info("Running %d leave-one-out folds on %d worker(s)", len(folds), workers)
    start = time.time()

    if workers == 1:
        results = [worker(a) for a in args]
    else:
        ctx = multiprocessing.get_context("spawn")
        with ctx.Pool(processes=workers) as pool:
            results = list(pool.imap(worker, args, chunksize=1))

    loo = LooResult(results, n_obs=table.n_obs)
    if loo.failed:
        logger.warning(
            "%d of %d folds did not converge: %s", len(loo.failed), table.n_obs, loo.failed
        )
    logger.info("Leave-one-out finished in %.1fs", time.time() - start)

    return loo
