"""
Covariate standardization.

Statistics are always fitted on one matrix and applied to another. In
cross-validation the fit matrix is the training partition only; a held-out
row must never contribute to the mean or scale used to transform it.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True, eq=False)
class Standardizer:
    """
    Column-wise centering and scaling.

    Attributes
    ----------
    mean : NDArray[np.float64]
        Column means, shape (n_covariates,)
    scale : NDArray[np.float64]
        Column sample standard deviations (ddof=1), shape (n_covariates,).
        Columns with no spread get scale 1.0.
    """

    mean: NDArray[np.float64]
    scale: NDArray[np.float64]

    @classmethod
    def fit(cls, X: NDArray[np.float64]) -> "Standardizer":
        """
        Fit column statistics.

        Parameters
        ----------
        X : NDArray[np.float64]
            Covariates, shape (n_obs, n_covariates)

        Returns
        -------
        standardizer : Standardizer
        """
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        if X.shape[0] == 0:
            raise ValueError("Cannot standardize an empty matrix")

        mean = X.mean(axis=0)
        if X.shape[0] > 1:
            scale = X.std(axis=0, ddof=1)
        else:
            scale = np.ones(X.shape[1])

        # Constant columns stay centred but unscaled
        scale = np.where(np.isfinite(scale) & (scale > 0), scale, 1.0)

        return cls(mean=mean, scale=scale)

    @classmethod
    def identity(cls, n_covariates: int) -> "Standardizer":
        return cls(mean=np.zeros(n_covariates), scale=np.ones(n_covariates))

    def transform(self, X: NDArray[np.float64]) -> NDArray[np.float64]:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[None, :] if X.shape[0] == self.mean.shape[0] else X[:, None]
        if X.shape[1] != self.mean.shape[0]:
            raise ValueError(
                f"X must have {self.mean.shape[0]} columns. Got {X.shape[1]}"
            )
        return (X - self.mean) / self.scale

    def inverse_transform(self, Z: NDArray[np.float64]) -> NDArray[np.float64]:
        Z = np.asarray(Z, dtype=np.float64)
        return Z * self.scale + self.mean

    def as_dict(self, names: Optional[tuple] = None) -> dict:
        """Mean and scale per column, keyed by name (or column index)."""
        names = names or tuple(str(j) for j in range(self.mean.shape[0]))
        return {
            name: {"mean": float(m), "scale": float(s)}
            for name, m, s in zip(names, self.mean, self.scale)
        }

    def __repr__(self) -> str:
        """String representation."""
        return f"Standardizer(mean={self.mean}, scale={self.scale})"
