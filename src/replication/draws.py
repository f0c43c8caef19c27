"""
Posterior draw sets for Poisson models with observation-level random effects.

A draw set is produced once per sampling run and never modified. Chains
and draws are flattened into a single leading axis of length S.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray


def _flatten(values: NDArray, trailing: int) -> NDArray[np.float64]:
    """Collapse (chain, draw, ...) to (chain * draw, ...)."""
    values = np.asarray(values, dtype=np.float64)
    return values.reshape(-1, *values.shape[2:]) if trailing else values.reshape(-1)


def _readonly(array: Optional[NDArray]) -> Optional[NDArray]:
    if array is None:
        return None
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class PosteriorDraws:
    """
    Flattened posterior draws of the OLRE Poisson model.

    Attributes
    ----------
    intercept : NDArray[np.float64]
        Intercept draws, shape (S,)
    slope : NDArray[np.float64]
        Covariate coefficients, shape (S, n_covariates)
    sigma : NDArray[np.float64]
        OLRE standard deviation, shape (S,). All zeros when the model
        has no observation-level effect.
    olre : NDArray[np.float64] or None
        Fitted per-observation offsets, shape (S, n_obs). Only present
        when the fit retained them; mixed replication never reads them.
    """

    intercept: NDArray[np.float64]
    slope: NDArray[np.float64]
    sigma: NDArray[np.float64]
    olre: Optional[NDArray[np.float64]] = None

    def __post_init__(self) -> None:
        intercept = np.asarray(self.intercept, dtype=np.float64).reshape(-1)
        slope = np.asarray(self.slope, dtype=np.float64)
        sigma = np.asarray(self.sigma, dtype=np.float64).reshape(-1)

        n = intercept.shape[0]
        if n == 0:
            raise ValueError("PosteriorDraws needs at least one draw")
        if slope.ndim == 1:
            slope = slope[:, None]
        if slope.shape[0] != n:
            raise ValueError(f"slope must have {n} rows. Got shape {slope.shape}")
        if sigma.shape != (n,):
            raise ValueError(f"sigma must have shape ({n},). Got {sigma.shape}")
        if np.any(sigma < 0) or not np.all(np.isfinite(sigma)):
            raise ValueError("sigma draws must be finite and non-negative")

        olre = self.olre
        if olre is not None:
            olre = np.asarray(olre, dtype=np.float64)
            if olre.ndim != 2 or olre.shape[0] != n:
                raise ValueError(f"olre must have shape ({n}, n_obs). Got {olre.shape}")

        object.__setattr__(self, "intercept", _readonly(intercept))
        object.__setattr__(self, "slope", _readonly(slope))
        object.__setattr__(self, "sigma", _readonly(sigma))
        object.__setattr__(self, "olre", _readonly(olre))

    @classmethod
    def from_idata(cls, idata, keep_olre: bool = True) -> "PosteriorDraws":
        """
        Extract draws from an ArviZ InferenceData posterior.

        Expects variables ``intercept`` and ``slope``; ``sigma`` and ``olre``
        are read when present. A posterior without ``sigma`` yields
        zero-variance draws.

        Parameters
        ----------
        idata : arviz.InferenceData
            Sampling output with a ``posterior`` group
        keep_olre : bool
            Keep the fitted per-observation offsets. Default True.

        Returns
        -------
        draws : PosteriorDraws
        """
        posterior = idata.posterior

        intercept = _flatten(posterior["intercept"].values, trailing=0)
        slope = _flatten(posterior["slope"].values, trailing=1)

        if "sigma" in posterior:
            sigma = _flatten(posterior["sigma"].values, trailing=0)
        else:
            sigma = np.zeros_like(intercept)

        olre = None
        if keep_olre and "olre" in posterior:
            olre = _flatten(posterior["olre"].values, trailing=1)

        return cls(intercept=intercept, slope=slope, sigma=sigma, olre=olre)

    @property
    def n_draws(self) -> int:
        return int(self.intercept.shape[0])

    @property
    def n_covariates(self) -> int:
        return int(self.slope.shape[1])

    @property
    def has_olre(self) -> bool:
        """True when any draw has a non-zero OLRE standard deviation."""
        return bool(np.any(self.sigma > 0))

    def linear_predictor(self, X: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Fixed-effect linear predictor per draw.

        Parameters
        ----------
        X : NDArray[np.float64]
            Covariates, shape (n_obs, n_covariates)

        Returns
        -------
        eta : NDArray[np.float64]
            intercept + X @ slope, shape (S, n_obs)
        """
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        if X.shape[1] != self.n_covariates:
            raise ValueError(
                f"X must have {self.n_covariates} columns. Got {X.shape[1]}"
            )
        return self.intercept[:, None] + self.slope @ X.T

    def thin(self, n: int, rng: Optional[np.random.Generator] = None) -> "PosteriorDraws":
        """Random subset of ``n`` draws without replacement."""
        if n >= self.n_draws:
            return self
        rng = rng or np.random.default_rng()
        idx = np.sort(rng.choice(self.n_draws, size=n, replace=False))
        return self.take(idx)

    def take(self, idx: NDArray[np.int64]) -> "PosteriorDraws":
        return PosteriorDraws(
            intercept=self.intercept[idx],
            slope=self.slope[idx],
            sigma=self.sigma[idx],
            olre=None if self.olre is None else self.olre[idx],
        )

    def without_olre(self) -> "PosteriorDraws":
        """Same hyperparameters with the fitted offsets dropped."""
        return PosteriorDraws(
            intercept=self.intercept, slope=self.slope, sigma=self.sigma, olre=None
        )

    def __repr__(self) -> str:
        """String representation."""
        olre = "none" if self.olre is None else f"{self.olre.shape[1]} obs"
        return (
            f"PosteriorDraws(n_draws={self.n_draws}, "
            f"n_covariates={self.n_covariates}, olre={olre})"
        )
