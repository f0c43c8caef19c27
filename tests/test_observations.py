"""
Unit tests for observation tables and covariate standardization.

Tests cover:
- Construction and validation of counts and covariates
- Loading from DataFrames and CSV files
- Immutability and row operations
- Standardization statistics and edge cases
"""

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose, assert_array_equal

from observations import ObservationTable, Standardizer, from_arrays


class TestObservationTable:
    """Tests for ObservationTable construction and validation."""

    def test_from_arrays_single_covariate(self) -> None:
        """Test a 1-D covariate becomes a single column."""
        table = from_arrays([1, 0, 4], [0.1, 0.2, 0.3])
        assert table.n_obs == 3
        assert table.n_covariates == 1
        assert table.covariate_names == ("x",)
        assert table.y.dtype == np.int64

    def test_from_arrays_default_names(self) -> None:
        """Test default names for several covariates."""
        table = from_arrays([1, 2], np.ones((2, 3)))
        assert table.covariate_names == ("x0", "x1", "x2")

    def test_whole_float_counts_accepted(self) -> None:
        """Test float counts with integer values are converted."""
        table = from_arrays(np.array([1.0, 2.0, 0.0]), [0.0, 1.0, 2.0])
        assert_array_equal(table.y, [1, 2, 0])

    def test_fractional_counts_rejected(self) -> None:
        """Test non-integer counts raise ValueError."""
        with pytest.raises(ValueError, match="whole numbers"):
            from_arrays([1.5, 2.0], [0.0, 1.0])

    def test_negative_counts_rejected(self) -> None:
        """Test negative counts raise ValueError."""
        with pytest.raises(ValueError, match="non-negative"):
            from_arrays([1, -1], [0.0, 1.0])

    def test_mismatched_lengths_rejected(self) -> None:
        """Test y and X with different lengths raise ValueError."""
        with pytest.raises(ValueError, match="must have shape"):
            from_arrays([1, 2, 3], [0.0, 1.0])

    def test_non_finite_covariates_rejected(self) -> None:
        """Test NaN covariates raise ValueError."""
        with pytest.raises(ValueError, match="finite"):
            from_arrays([1, 2], [0.0, np.nan])

    def test_arrays_are_read_only(self) -> None:
        """Test the stored arrays cannot be written."""
        source = np.array([1, 2, 3])
        table = from_arrays(source, [0.0, 1.0, 2.0])
        with pytest.raises(ValueError):
            table.y[0] = 10
        source[0] = 99
        assert table.y[0] == 1

    def test_drop_preserves_order(self) -> None:
        """Test dropping a row keeps the remaining order."""
        table = from_arrays([10, 11, 12, 13], [0.0, 1.0, 2.0, 3.0])
        train = table.drop(1)
        assert_array_equal(train.y, [10, 12, 13])
        assert_array_equal(train.X[:, 0], [0.0, 2.0, 3.0])
        assert table.n_obs == 4

    def test_drop_out_of_range(self) -> None:
        """Test dropping a missing row raises ValueError."""
        table = from_arrays([1, 2], [0.0, 1.0])
        with pytest.raises(ValueError):
            table.drop(2)

    def test_subset(self) -> None:
        """Test subsetting follows the given index order."""
        table = from_arrays([10, 11, 12], [0.0, 1.0, 2.0])
        sub = table.subset([2, 0])
        assert_array_equal(sub.y, [12, 10])


class TestLoading:
    """Tests for DataFrame and CSV loading."""

    def test_from_frame(self) -> None:
        """Test loading named columns from a DataFrame."""
        frame = pd.DataFrame({"count": [3, 1, 0], "temp": [1.0, 2.0, 3.0], "other": list("abc")})
        table = ObservationTable.from_frame(frame, "count", ["temp"])
        assert table.response_name == "count"
        assert table.covariate_names == ("temp",)
        assert_array_equal(table.y, [3, 1, 0])

    def test_missing_column(self) -> None:
        """Test a missing column raises ValueError."""
        frame = pd.DataFrame({"count": [1, 2]})
        with pytest.raises(ValueError, match="not found"):
            ObservationTable.from_frame(frame, "count", ["temp"])

    def test_missing_values(self) -> None:
        """Test missing values raise ValueError."""
        frame = pd.DataFrame({"count": [1, None], "temp": [1.0, 2.0]})
        with pytest.raises(ValueError, match="Missing values"):
            ObservationTable.from_frame(frame, "count", ["temp"])

    def test_non_numeric_covariate(self) -> None:
        """Test a text covariate raises ValueError."""
        frame = pd.DataFrame({"count": [1, 2], "site": ["a", "b"]})
        with pytest.raises(ValueError, match="numeric"):
            ObservationTable.from_frame(frame, "count", ["site"])

    def test_no_covariates(self) -> None:
        """Test an empty covariate list raises ValueError."""
        frame = pd.DataFrame({"count": [1, 2]})
        with pytest.raises(ValueError):
            ObservationTable.from_frame(frame, "count", [])

    def test_csv_round_trip(self, tmp_path) -> None:
        """Test reading a table back from CSV."""
        table = from_arrays([4, 0, 7], [0.5, -1.0, 2.0])
        path = tmp_path / "counts.csv"
        table.to_frame().to_csv(path, index=False)

        loaded = ObservationTable.from_csv(path, "y", ["x"])
        assert_array_equal(loaded.y, table.y)
        assert_allclose(loaded.X, table.X)


class TestStandardizer:
    """Tests for covariate standardization."""

    def test_fit_transform(self) -> None:
        """Test centred and scaled columns."""
        X = np.array([[1.0, 10.0], [2.0, 20.0], [3.0, 30.0], [4.0, 40.0]])
        std = Standardizer.fit(X)
        Z = std.transform(X)

        assert_allclose(Z.mean(axis=0), 0.0, atol=1e-12)
        assert_allclose(Z.std(axis=0, ddof=1), 1.0)
        assert_allclose(std.inverse_transform(Z), X)

    def test_uses_sample_std(self) -> None:
        """Test the scale is the ddof=1 standard deviation."""
        X = np.array([[0.0], [2.0]])
        std = Standardizer.fit(X)
        assert_allclose(std.scale, [np.sqrt(2.0)])

    def test_constant_column(self) -> None:
        """Test a constant column is centred but not scaled."""
        X = np.array([[5.0], [5.0], [5.0]])
        std = Standardizer.fit(X)
        assert_allclose(std.scale, [1.0])
        assert_allclose(std.transform(X), 0.0)

    def test_single_row(self) -> None:
        """Test one row gives unit scale."""
        std = Standardizer.fit(np.array([[3.0, 4.0]]))
        assert_allclose(std.scale, [1.0, 1.0])

    def test_transform_new_row(self) -> None:
        """Test statistics fitted on one matrix are applied to another."""
        std = Standardizer.fit(np.array([[0.0], [2.0], [4.0]]))
        assert_allclose(std.transform(np.array([[6.0]])), [[2.0]])

    def test_column_mismatch(self) -> None:
        """Test a matrix with the wrong number of columns is rejected."""
        std = Standardizer.fit(np.ones((3, 2)) * np.arange(3)[:, None])
        with pytest.raises(ValueError):
            std.transform(np.ones((2, 3)))

    def test_empty_matrix(self) -> None:
        """Test an empty matrix cannot be fitted."""
        with pytest.raises(ValueError):
            Standardizer.fit(np.empty((0, 2)))
