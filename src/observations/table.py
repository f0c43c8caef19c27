"""
Observation table: count responses with numeric covariates.

An observation is one row holding a non-negative integer count and one or
more numeric covariates. The per-row latent offset (the OLRE) is implicit:
it lives in the model, not in the data.

Row order carries no modelling meaning, but replicated datasets are aligned
to it by index, so every operation here preserves order.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray


def _readonly(array: NDArray) -> NDArray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class ObservationTable:
    """
    Immutable collection of observations.

    Attributes
    ----------
    y : NDArray[np.int64]
        Count response, shape (n_obs,)
    X : NDArray[np.float64]
        Covariates, shape (n_obs, n_covariates)
    covariate_names : tuple of str
        Column names for X
    response_name : str
        Name of the response column
    """

    y: NDArray[np.int64]
    X: NDArray[np.float64]
    covariate_names: Tuple[str, ...]
    response_name: str = "y"

    def __post_init__(self) -> None:
        y = np.asarray(self.y)
        X = np.asarray(self.X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]

        if y.ndim != 1:
            raise ValueError(f"y must be one-dimensional. Got shape {y.shape}")
        if X.ndim != 2 or X.shape[0] != y.shape[0]:
            raise ValueError(
                f"X must have shape ({y.shape[0]}, n_covariates). Got {X.shape}"
            )
        if X.shape[1] == 0:
            raise ValueError("At least one covariate is required")
        if len(self.covariate_names) != X.shape[1]:
            raise ValueError(
                f"Expected {X.shape[1]} covariate names. "
                f"Got {len(self.covariate_names)}"
            )
        if not np.all(np.isfinite(X)):
            raise ValueError("Covariates must be finite")

        if not np.issubdtype(y.dtype, np.integer):
            if not np.all(np.isfinite(y)) or not np.all(np.mod(y, 1) == 0):
                raise ValueError("Counts must be whole numbers")
        if np.any(y < 0):
            raise ValueError("Counts must be non-negative")

        object.__setattr__(self, "y", _readonly(y.astype(np.int64)))
        object.__setattr__(self, "X", _readonly(X))
        object.__setattr__(self, "covariate_names", tuple(self.covariate_names))

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        response: str,
        covariates: Sequence[str],
    ) -> "ObservationTable":
        """
        Build a table from a DataFrame.

        Parameters
        ----------
        frame : pd.DataFrame
            Source data
        response : str
            Name of the count column
        covariates : sequence of str
            Names of the numeric covariate columns

        Returns
        -------
        table : ObservationTable

        Raises
        ------
        ValueError
            If a column is missing, holds missing values, or is not numeric.
        """
        covariates = list(covariates)
        if not covariates:
            raise ValueError("At least one covariate is required")

        missing = [c for c in [response, *covariates] if c not in frame.columns]
        if missing:
            raise ValueError(f"Columns not found in data: {missing}")

        subset = frame[[response, *covariates]]
        if subset.isna().any().any():
            bad = subset.columns[subset.isna().any()].tolist()
            raise ValueError(f"Missing values in columns: {bad}")

        for column in [response, *covariates]:
            if not pd.api.types.is_numeric_dtype(subset[column]):
                raise ValueError(f"Column '{column}' must be numeric")

        return cls(
            y=subset[response].to_numpy(),
            X=subset[covariates].to_numpy(dtype=np.float64),
            covariate_names=tuple(covariates),
            response_name=response,
        )

    @classmethod
    def from_csv(
        cls,
        path: Union[str, Path],
        response: str,
        covariates: Sequence[str],
    ) -> "ObservationTable":
        """Read a CSV file and build a table from it."""
        return cls.from_frame(pd.read_csv(path), response, covariates)

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_covariates(self) -> int:
        return int(self.X.shape[1])

    def subset(self, indices: Sequence[int]) -> "ObservationTable":
        """Return a new table holding the given rows, in the given order."""
        idx = np.asarray(indices, dtype=np.int64)
        return ObservationTable(
            y=self.y[idx],
            X=self.X[idx],
            covariate_names=self.covariate_names,
            response_name=self.response_name,
        )

    def drop(self, index: int) -> "ObservationTable":
        """Return a new table without row ``index``."""
        if not (0 <= index < self.n_obs):
            raise ValueError(f"index must be in [0, {self.n_obs - 1}]. Got {index}")
        keep = np.delete(np.arange(self.n_obs), index)
        return self.subset(keep)

    def with_covariates(self, X: NDArray[np.float64]) -> "ObservationTable":
        """Return a copy with the covariate matrix replaced (same names)."""
        return ObservationTable(
            y=self.y,
            X=X,
            covariate_names=self.covariate_names,
            response_name=self.response_name,
        )

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.X, columns=list(self.covariate_names))
        frame.insert(0, self.response_name, self.y)
        return frame

    def __len__(self) -> int:
        return self.n_obs

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ObservationTable(n_obs={self.n_obs}, response={self.response_name!r}, "
            f"covariates={list(self.covariate_names)})"
        )


def from_arrays(
    y: Sequence[int],
    X: Union[Sequence[float], NDArray[np.float64]],
    covariate_names: Optional[Sequence[str]] = None,
) -> ObservationTable:
    """
    Build a table from plain arrays.

    Covariate names default to ``x``, or ``x0``, ``x1``, ... when there are
    several columns.
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, None]
    if covariate_names is None:
        if X.shape[1] == 1:
            covariate_names = ("x",)
        else:
            covariate_names = tuple(f"x{j}" for j in range(X.shape[1]))
    return ObservationTable(y=np.asarray(y), X=X, covariate_names=tuple(covariate_names))
