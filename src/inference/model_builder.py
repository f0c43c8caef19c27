"""
Bayesian model builder: PyMC Poisson regression with observation-level effects.

The model is described by an immutable ModelSpec and turned into a fresh
PyMC model on every build. Nothing is added to a model after it is built;
prediction happens outside PyMC from posterior draws (see ``replication``).

Mathematical model:
    a ~ Normal(a0, s_a)                            # Intercept
    b_j ~ Normal(0, s_b)                           # Covariate slopes
    sigma ~ HalfNormal(s_sigma)                    # OLRE scale
    e_i = sigma * z_i,  z_i ~ Normal(0, 1)         # Non-centred OLRE
    y_i ~ Poisson(exp(a + x_i b + e_i))            # Counts

Without the OLRE the e_i and sigma terms are dropped.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray
import pymc as pm
import pytensor.tensor as pt


@dataclass(frozen=True)
class PriorSpec:
    """
    Specification of priors for model parameters.

    Attributes
    ----------
    intercept_loc : float
        Prior mean of the intercept (log scale). Default 0.0.
    intercept_scale : float
        Prior std of the intercept. Default 5.0.
    slope_scale : float
        Prior std of each slope on standardized covariates. Default 2.5.
    sigma_scale : float
        HalfNormal scale for the OLRE standard deviation. Default 1.0.
    """

    intercept_loc: float = 0.0
    intercept_scale: float = 5.0
    slope_scale: float = 2.5
    sigma_scale: float = 1.0

    def __post_init__(self) -> None:
        for name in ("intercept_scale", "slope_scale", "sigma_scale"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive. Got {getattr(self, name)}")

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"PriorSpec(intercept=N({self.intercept_loc}, {self.intercept_scale}), "
            f"slope_scale={self.slope_scale}, sigma_scale={self.sigma_scale})"
        )


@dataclass(frozen=True)
class ModelSpec:
    """
    Immutable description of the count model.

    Attributes
    ----------
    olre : bool
        Include an observation-level random effect. Default True.
    priors : PriorSpec
        Prior specification
    non_centered : bool
        Parameterise the OLRE as sigma * z. Default True.
    retain_olre : bool
        Keep the per-observation offsets as a Deterministic in the trace.
        Needed only for diagnostics and the fixed-offset comparison.
    """

    olre: bool = True
    priors: PriorSpec = field(default_factory=PriorSpec)
    non_centered: bool = True
    retain_olre: bool = True

    def without_olre(self) -> "ModelSpec":
        return ModelSpec(
            olre=False,
            priors=self.priors,
            non_centered=self.non_centered,
            retain_olre=False,
        )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ModelSpec(olre={self.olre}, non_centered={self.non_centered}, "
            f"priors={self.priors})"
        )


class ModelBuilder:
    """
    Poisson-OLRE model builder.

    Validates data dimensions against a fixed (n_obs, n_covariates) shape
    and assembles a new PyMC model per call to ``build``. The builder keeps
    no reference to the models it creates.

    Attributes
    ----------
    n_obs : int
        Number of observations
    n_covariates : int
        Number of covariate columns
    spec : ModelSpec
        Model specification
    """

    def __init__(
        self,
        n_obs: int,
        n_covariates: int,
        spec: Optional[ModelSpec] = None,
    ) -> None:
        """
        Initialize model builder.

        Parameters
        ----------
        n_obs : int
            Number of observations
        n_covariates : int
            Number of covariate columns
        spec : ModelSpec, optional
            Model specification. If None, use defaults (with OLRE).
        """
        if n_obs <= 0 or n_covariates <= 0:
            raise ValueError(
                f"All dimensions must be positive. Got "
                f"n_obs={n_obs}, n_covariates={n_covariates}"
            )

        self.n_obs = n_obs
        self.n_covariates = n_covariates
        self.spec = spec or ModelSpec()

    def _validate(self, y: NDArray, X: NDArray) -> None:
        if y.shape != (self.n_obs,):
            raise ValueError(f"y must have shape ({self.n_obs},). Got {y.shape}")
        if X.shape != (self.n_obs, self.n_covariates):
            raise ValueError(
                f"X must have shape ({self.n_obs}, {self.n_covariates}). "
                f"Got {X.shape}"
            )
        if np.any(y < 0):
            raise ValueError("y must contain non-negative counts")
        if not np.all(np.isfinite(X)):
            raise ValueError("X must be finite")

    def _build_fixed_effects(self, X_data):
        """Intercept, slopes and the fixed-effect linear predictor."""
        priors = self.spec.priors

        intercept = pm.Normal(
            "intercept",
            mu=priors.intercept_loc,
            sigma=priors.intercept_scale,
        )
        slope = pm.Normal(
            "slope",
            mu=0.0,
            sigma=priors.slope_scale,
            dims="covariate",
        )
        return intercept + pt.dot(X_data, slope)

    def _build_olre(self):
        """Observation-level offsets e_i with their scale sigma."""
        sigma = pm.HalfNormal("sigma", sigma=self.spec.priors.sigma_scale)

        if self.spec.non_centered:
            z = pm.Normal("olre_z", mu=0.0, sigma=1.0, dims="obs")
            offset = sigma * z
            if self.spec.retain_olre:
                offset = pm.Deterministic("olre", offset, dims="obs")
        else:
            offset = pm.Normal("olre", mu=0.0, sigma=sigma, dims="obs")

        return offset

    def build(
        self,
        y: NDArray[np.int64],
        X: NDArray[np.float64],
        covariate_names: Optional[Sequence[str]] = None,
    ) -> pm.Model:
        """
        Build the full PyMC model.

        Parameters
        ----------
        y : NDArray[np.int64]
            Observed counts, shape (n_obs,)
        X : NDArray[np.float64]
            Covariates (already standardized), shape (n_obs, n_covariates)
        covariate_names : sequence of str, optional
            Labels for the ``covariate`` dimension

        Returns
        -------
        model : pm.Model
            New PyMC model ready for inference.
        """
        y = np.asarray(y)
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        self._validate(y, X)

        if covariate_names is None:
            covariate_names = [f"x{j}" for j in range(self.n_covariates)]
        coords = {
            "obs": np.arange(self.n_obs),
            "covariate": list(covariate_names),
        }

        with pm.Model(coords=coords) as model:
            X_data = pm.Data("X", X, dims=("obs", "covariate"))
            eta = self._build_fixed_effects(X_data)

            if self.spec.olre:
                eta = eta + self._build_olre()

            pm.Poisson("y", mu=pt.exp(eta), observed=y, dims="obs")

        return model

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ModelBuilder(n_obs={self.n_obs}, n_covariates={self.n_covariates}, "
            f"spec={self.spec})"
        )


def build_model(
    spec: ModelSpec,
    y: NDArray[np.int64],
    X: NDArray[np.float64],
    covariate_names: Optional[Sequence[str]] = None,
) -> pm.Model:
    """Build a PyMC model for ``spec`` on (y, X). Pure: returns a new model."""
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, None]
    builder = ModelBuilder(n_obs=X.shape[0], n_covariates=X.shape[1], spec=spec)
    return builder.build(y, X, covariate_names=covariate_names)
