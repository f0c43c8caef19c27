"""
NUTS sampler and convergence diagnostics for OLRE count models.

Orchestrates PyMC sampling, computes convergence diagnostics (Rhat, ESS,
divergences) and retries with a higher target acceptance rate when a fit
has not converged. Non-convergence is always surfaced: either as a report
attached to the summary or as a ConvergenceError once retries run out.

Key diagnostics:
- Rhat (rank-normalised): <1.01 indicates convergence
- ESS (bulk and tail): a few hundred across chains recommended
- Divergences: any divergence biases the posterior of sigma
- PSIS-LOO Pareto k: >0.7 marks observations where importance sampling fails
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
import pymc as pm
import arviz as az

from inference.model_builder import ModelSpec, build_model
from observations import ObservationTable
from replication.draws import PosteriorDraws

logger = logging.getLogger(__name__)

DEFAULT_VAR_NAMES = ("intercept", "slope", "sigma")


def _seed_sequence(random_seed) -> np.random.SeedSequence:
    if isinstance(random_seed, np.random.SeedSequence):
        return random_seed
    return np.random.SeedSequence(random_seed)


@dataclass(frozen=True)
class SamplerConfig:
    """
    NUTS sampling and convergence settings.

    Attributes
    ----------
    draws : int
        Post-tuning draws per chain. Default 1000.
    tune : int
        Tuning steps per chain. Default 1000.
    chains : int
        Number of chains. Default 2.
    cores : int
        Processes used by PyMC. Default 1 (parallelism lives in the LOO loop).
    target_accept : float
        Initial NUTS acceptance target. Default 0.9.
    max_treedepth : int
        Maximum NUTS tree depth. Default 10.
    accept_schedule : tuple of float
        target_accept values tried, in order, after a failed attempt.
    max_retries : int
        Number of retries after the first attempt. Default 2.
    rhat_threshold : float
        Largest acceptable Rhat. Default 1.01.
    ess_threshold : float
        Smallest acceptable bulk/tail ESS. Default 200.
    max_divergence_rate : float
        Largest acceptable fraction of divergent transitions. Default 0.0.
    log_likelihood : bool
        Store pointwise log-likelihood (needed for PSIS-LOO). Default False.
    progressbar : bool
        Show the PyMC progress bar. Default False.
    """

    draws: int = 1000
    tune: int = 1000
    chains: int = 2
    cores: int = 1
    target_accept: float = 0.9
    max_treedepth: int = 10
    accept_schedule: Tuple[float, ...] = (0.95, 0.99)
    max_retries: int = 2
    rhat_threshold: float = 1.01
    ess_threshold: float = 200.0
    max_divergence_rate: float = 0.0
    log_likelihood: bool = False
    progressbar: bool = False

    def __post_init__(self) -> None:
        if self.draws <= 0 or self.tune < 0 or self.chains <= 0 or self.cores <= 0:
            raise ValueError(
                f"draws, chains and cores must be positive and tune non-negative. "
                f"Got draws={self.draws}, tune={self.tune}, "
                f"chains={self.chains}, cores={self.cores}"
            )
        for accept in (self.target_accept, *self.accept_schedule):
            if not (0.5 < accept < 1.0):
                raise ValueError(f"target_accept must be in (0.5, 1). Got {accept}")
        if self.max_treedepth < 5:
            raise ValueError(f"max_treedepth must be >= 5. Got {self.max_treedepth}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0. Got {self.max_retries}")
        if not (0.0 <= self.max_divergence_rate < 1.0):
            raise ValueError(
                f"max_divergence_rate must be in [0, 1). Got {self.max_divergence_rate}"
            )

    def accept_for_attempt(self, attempt: int) -> float:
        """target_accept used on attempt 0, 1, 2, ..."""
        if attempt == 0 or not self.accept_schedule:
            return self.target_accept
        idx = min(attempt - 1, len(self.accept_schedule) - 1)
        return self.accept_schedule[idx]

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"SamplerConfig(draws={self.draws}, tune={self.tune}, "
            f"chains={self.chains}, target_accept={self.target_accept}, "
            f"max_retries={self.max_retries})"
        )


@dataclass
class ConvergenceReport:
    """Convergence diagnostics for one sampling run."""

    max_rhat: float
    min_ess_bulk: float
    min_ess_tail: float
    n_divergences: int
    divergence_rate: float
    target_accept: float
    problems: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not self.problems

    def as_dict(self) -> Dict:
        return {
            "max_rhat": self.max_rhat,
            "min_ess_bulk": self.min_ess_bulk,
            "min_ess_tail": self.min_ess_tail,
            "n_divergences": self.n_divergences,
            "divergence_rate": self.divergence_rate,
            "target_accept": self.target_accept,
            "converged": self.converged,
            "problems": list(self.problems),
        }

    def __repr__(self) -> str:
        """String representation."""
        status = "converged" if self.converged else f"{len(self.problems)} problem(s)"
        return (
            f"ConvergenceReport(max_rhat={self.max_rhat:.3f}, "
            f"min_ess_bulk={self.min_ess_bulk:.0f}, "
            f"divergences={self.n_divergences}, {status})"
        )


class ConvergenceError(RuntimeError):
    """Raised when sampling has not converged after every retry."""

    def __init__(self, message: str, report: ConvergenceReport, attempts: int) -> None:
        super().__init__(message)
        self.report = report
        self.attempts = attempts


class InferenceSummary:
    """Summary of one MCMC run with its diagnostics."""

    def __init__(
        self,
        idata,  # arviz.InferenceData
        n_draws: int,
        n_tune: int,
        n_chains: int,
        sampling_time: float,
        report: Optional[ConvergenceReport] = None,
        attempts: int = 1,
    ) -> None:
        """
        Initialize inference summary.

        Parameters
        ----------
        idata : arviz.InferenceData
            Posterior inference data from PyMC
        n_draws : int
            Number of post-tuning draws per chain
        n_tune : int
            Number of tuning steps per chain
        n_chains : int
            Number of chains
        sampling_time : float
            Wall time of the final attempt (seconds)
        report : ConvergenceReport, optional
            Diagnostics of the final attempt
        attempts : int
            Number of sampling attempts made. Default 1.
        """
        self.idata = idata
        self.n_draws = n_draws
        self.n_tune = n_tune
        self.n_chains = n_chains
        self.sampling_time = sampling_time
        self.report = report
        self.attempts = attempts
        self.total_samples = n_draws * n_chains

    @property
    def converged(self) -> bool:
        return self.report is not None and self.report.converged

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"InferenceSummary(draws={self.n_draws}, tune={self.n_tune}, "
            f"chains={self.n_chains}, time={self.sampling_time:.1f}s, "
            f"attempts={self.attempts})"
        )


class DiagnosticsComputer:
    """
    Convergence diagnostics from posterior samples, computed with ArviZ.
    """

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64]) -> float:
        """
        Rank-normalised split Rhat for one scalar quantity.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Samples, shape (chains, draws)

        Returns
        -------
        rhat : float
            Potential scale reduction factor. <1.01 is good.
        """
        posterior_samples = np.asarray(posterior_samples, dtype=np.float64)
        if posterior_samples.ndim != 2 or posterior_samples.shape[0] < 2:
            raise ValueError("Need at least 2 chains for Rhat")
        if np.ptp(posterior_samples) == 0:
            return 1.0
        return float(az.rhat(posterior_samples))

    @staticmethod
    def ess(posterior_samples: NDArray[np.float64], method: str = "bulk") -> float:
        """
        Effective sample size for one scalar quantity.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Samples, shape (draws,) for one chain or (chains, draws)
        method : str
            ArviZ ESS method ("bulk", "tail", ...). Default "bulk".
        """
        posterior_samples = np.atleast_2d(np.asarray(posterior_samples, dtype=np.float64))
        if np.ptp(posterior_samples) == 0:
            return float(posterior_samples.size)
        return float(az.ess(posterior_samples, method=method))

    @staticmethod
    def divergence_rate(idata) -> float:
        """
        Fraction of post-tuning transitions that diverged.

        Parameters
        ----------
        idata : arviz.InferenceData
            Sampling output with a ``sample_stats`` group
        """
        n_divergences = int(idata.sample_stats["diverging"].sum().item())
        n_total = idata.posterior.sizes["draw"] * idata.posterior.sizes["chain"]
        return float(n_divergences / n_total)

    @staticmethod
    def report(
        idata,
        config: SamplerConfig,
        target_accept: Optional[float] = None,
        var_names: Optional[Sequence[str]] = None,
    ) -> ConvergenceReport:
        """
        Evaluate a posterior against the thresholds in ``config``.

        Parameters
        ----------
        idata : arviz.InferenceData
            Sampling output
        config : SamplerConfig
            Thresholds
        target_accept : float, optional
            Acceptance target used for this run (recorded in the report)
        var_names : sequence of str, optional
            Variables checked. Defaults to intercept, slope and sigma
            (whichever are present).

        Returns
        -------
        report : ConvergenceReport
        """
        names = var_names or DEFAULT_VAR_NAMES
        names = [name for name in names if name in idata.posterior]

        n_chains = idata.posterior.sizes["chain"]
        n_draws = idata.posterior.sizes["draw"]
        components = []
        for name in names:
            values = idata.posterior[name].transpose("chain", "draw", ...).values
            values = values.reshape(n_chains, n_draws, -1)
            components.extend(values[:, :, k] for k in range(values.shape[2]))

        if n_chains >= 2:
            max_rhat = max(DiagnosticsComputer.rhat(c) for c in components)
        else:
            max_rhat = float("nan")

        min_bulk = min(DiagnosticsComputer.ess(c, method="bulk") for c in components)
        min_tail = min(DiagnosticsComputer.ess(c, method="tail") for c in components)

        n_div = int(idata.sample_stats["diverging"].sum().item())
        div_rate = DiagnosticsComputer.divergence_rate(idata)

        problems = []
        if np.isfinite(max_rhat) and max_rhat > config.rhat_threshold:
            problems.append(f"max Rhat {max_rhat:.3f} > {config.rhat_threshold}")
        if min_bulk < config.ess_threshold:
            problems.append(f"bulk ESS {min_bulk:.0f} < {config.ess_threshold:.0f}")
        if min_tail < config.ess_threshold:
            problems.append(f"tail ESS {min_tail:.0f} < {config.ess_threshold:.0f}")
        if div_rate > config.max_divergence_rate:
            problems.append(f"{n_div} divergent transitions ({div_rate:.1%})")

        return ConvergenceReport(
            max_rhat=max_rhat,
            min_ess_bulk=min_bulk,
            min_ess_tail=min_tail,
            n_divergences=n_div,
            divergence_rate=div_rate,
            target_accept=target_accept if target_accept is not None else config.target_accept,
            problems=problems,
        )


class NUTSSampler:
    """
    NUTS sampler for OLRE count models.

    Runs PyMC MCMC with the settings in a SamplerConfig, attaches a
    convergence report to every run, and can retry with a higher
    acceptance target until the diagnostics pass.
    """

    def __init__(self, config: Optional[SamplerConfig] = None) -> None:
        """
        Initialize sampler.

        Parameters
        ----------
        config : SamplerConfig, optional
            Sampling settings. If None, use defaults.
        """
        self.config = config or SamplerConfig()

    def sample(
        self,
        model: pm.Model,
        random_seed=None,
        target_accept: Optional[float] = None,
    ) -> InferenceSummary:
        """
        Run NUTS sampling once.

        Parameters
        ----------
        model : pm.Model
            PyMC model (from ``build_model``)
        random_seed : int or SeedSequence, optional
            Random seed for reproducibility
        target_accept : float, optional
            Overrides ``config.target_accept`` for this run

        Returns
        -------
        summary : InferenceSummary
            Posterior and diagnostics. Never raises on non-convergence;
            check ``summary.converged``.
        """
        cfg = self.config
        accept = target_accept if target_accept is not None else cfg.target_accept

        start_time = time.time()
        with model:
            idata = pm.sample(
                draws=cfg.draws,
                tune=cfg.tune,
                chains=cfg.chains,
                cores=cfg.cores,
                random_seed=random_seed,
                progressbar=cfg.progressbar,
                target_accept=accept,
                nuts={"max_treedepth": cfg.max_treedepth},
                idata_kwargs={"log_likelihood": cfg.log_likelihood},
                discard_tuned_samples=True,
                compute_convergence_checks=False,
            )
        sampling_time = time.time() - start_time

        report = DiagnosticsComputer.report(idata, cfg, target_accept=accept)
        logger.debug("Sampling finished in %.1fs: %r", sampling_time, report)

        return InferenceSummary(
            idata=idata,
            n_draws=cfg.draws,
            n_tune=cfg.tune,
            n_chains=cfg.chains,
            sampling_time=sampling_time,
            report=report,
        )

    def sample_until_converged(self, model: pm.Model, random_seed=None) -> InferenceSummary:
        """
        Sample, retrying with higher target_accept while diagnostics fail.

        Raises
        ------
        ConvergenceError
            If the final attempt still fails the convergence thresholds.
        """
        cfg = self.config
        seeds = _seed_sequence(random_seed).spawn(cfg.max_retries + 1)

        summary = None
        for attempt in range(cfg.max_retries + 1):
            accept = cfg.accept_for_attempt(attempt)
            seed = int(seeds[attempt].generate_state(1)[0])
            summary = self.sample(model, random_seed=seed, target_accept=accept)
            summary.attempts = attempt + 1

            if summary.converged:
                return summary

            if attempt < cfg.max_retries:
                logger.warning(
                    "Attempt %d did not converge (%s); retrying with target_accept=%.3f",
                    attempt + 1,
                    "; ".join(summary.report.problems),
                    cfg.accept_for_attempt(attempt + 1),
                )

        raise ConvergenceError(
            f"Sampling did not converge after {cfg.max_retries + 1} attempt(s): "
            + "; ".join(summary.report.problems),
            report=summary.report,
            attempts=cfg.max_retries + 1,
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"NUTSSampler(config={self.config})"


@dataclass
class FitResult:
    """A converged fit with its flattened posterior draws."""

    spec: ModelSpec
    summary: InferenceSummary
    draws: PosteriorDraws

    @property
    def idata(self):
        return self.summary.idata


def fit(
    spec: ModelSpec,
    table: ObservationTable,
    config: Optional[SamplerConfig] = None,
    random_seed=None,
) -> FitResult:
    """
    Build the model for ``table``, sample until converged, extract draws.

    The table's covariates are used as given; standardize them first.

    Raises
    ------
    ConvergenceError
        If sampling does not converge after every retry.
    """
    model = build_model(spec, table.y, table.X, covariate_names=table.covariate_names)
    sampler = NUTSSampler(config)

    logger.info(
        "Fitting %s model on %d observations", "OLRE" if spec.olre else "Poisson", table.n_obs
    )
    summary = sampler.sample_until_converged(model, random_seed=random_seed)
    logger.info(
        "Fit converged after %d attempt(s) in %.1fs", summary.attempts, summary.sampling_time
    )

    draws = PosteriorDraws.from_idata(summary.idata, keep_olre=spec.retain_olre)
    return FitResult(spec=spec, summary=summary, draws=draws)


def psis_loo(idata):
    """
    PSIS-LOO estimate (Pareto-smoothed importance sampling).

    Requires a ``log_likelihood`` group (``SamplerConfig(log_likelihood=True)``).
    """
    return az.loo(idata, pointwise=True)


def summarize_pareto_k(loo_result) -> Dict[str, float]:
    """
    Count observations in each Pareto k diagnostic category.

    Categories (Vehtari et al. 2017):
      good:       k < 0.5
      ok:         0.5 <= k < 0.7
      bad:        0.7 <= k < 1.0
      very_bad:   k >= 1.0

    Models with an observation-level effect routinely produce bad or very
    bad k values because each offset is informed by a single point; exact
    refitting (``crossval``) is the fallback.
    """
    k_values = np.asarray(loo_result.pareto_k)

    return {
        "good": int(np.sum(k_values < 0.5)),
        "ok": int(np.sum((k_values >= 0.5) & (k_values < 0.7))),
        "bad": int(np.sum((k_values >= 0.7) & (k_values < 1.0))),
        "very_bad": int(np.sum(k_values >= 1.0)),
        "total": int(k_values.size),
        "max_k": float(np.max(k_values)),
        "mean_k": float(np.mean(k_values)),
    }
