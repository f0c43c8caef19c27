"""
Unit tests for exact leave-one-out replication.

Model fitting is replaced by stand-ins so that the fold bookkeeping,
per-fold standardization, failure handling and held-out densities are
tested without MCMC. Real refits are covered in test_end_to_end.py.

Tests cover:
- Fold construction and training-only standardization
- Failed-fold masking and draw-count alignment
- Held-out log predictive density
- fit_fold with a stubbed fit
"""

from types import SimpleNamespace

import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal
from pymc.exceptions import SamplingError
from scipy.stats import poisson

import crossval.loo as loo_module
from crossval import (
    FoldResult,
    LooResult,
    fit_fold,
    heldout_log_density,
    make_fold,
    make_folds,
    run_loo,
)
from inference import ConvergenceError, ConvergenceReport, ModelSpec
from observations import from_arrays
from replication import PosteriorDraws
from simulation import extreme_value_table


def fake_fitter(fold, spec=None, config=None, random_seed=None):
    """Fold fitter that fails on row 3 and varies the draw count by row."""
    if fold.index == 3:
        return FoldResult(index=fold.index, converged=False, error="did not converge")
    n_draws = 100 + 10 * fold.index
    rng = np.random.default_rng(random_seed)
    return FoldResult(
        index=fold.index,
        converged=True,
        y_rep=rng.poisson(5.0, n_draws).astype(np.int64),
        elpd=-2.0,
        standardizer=fold.standardizer,
    )


def seed_recorder(fold, spec=None, config=None, random_seed=None):
    """Fold fitter whose replicates depend only on its seed."""
    rng = np.random.default_rng(random_seed)
    return FoldResult(
        index=fold.index,
        converged=True,
        y_rep=rng.integers(0, 1000, 20),
        standardizer=fold.standardizer,
    )


def _report(converged=True):
    return ConvergenceReport(
        max_rhat=1.0 if converged else 1.3,
        min_ess_bulk=900.0,
        min_ess_tail=900.0,
        n_divergences=0,
        divergence_rate=0.0,
        target_accept=0.99,
        problems=[] if converged else ["max Rhat 1.300 > 1.01"],
    )


class TestFolds:
    """Tests for fold construction."""

    def test_fold_count(self) -> None:
        """Test one fold per observation, in row order."""
        table = extreme_value_table()
        folds = list(make_folds(table))
        assert len(folds) == table.n_obs
        assert [f.index for f in folds] == list(range(table.n_obs))

    def test_heldout_row_excluded(self) -> None:
        """Test the held-out row is not in the training partition."""
        table = extreme_value_table()
        fold = make_fold(table, 5)
        assert fold.train.n_obs == table.n_obs - 1
        assert fold.test_y == 30
        assert_allclose(fold.test_X_raw, table.X[5:6])
        assert not np.any(np.isclose(fold.train.X[:, 0], table.X[5, 0]))

    def test_training_only_standardization(self) -> None:
        """Test fold statistics come from the training rows alone."""
        table = extreme_value_table()
        for index in [0, 8, 9]:
            fold = make_fold(table, index)
            train_X = np.delete(table.X, index, axis=0)
            assert_allclose(fold.standardizer.mean, train_X.mean(axis=0))
            assert_allclose(fold.standardizer.scale, train_X.std(axis=0, ddof=1))
            assert not np.allclose(fold.standardizer.mean, table.X.mean(axis=0))

    def test_standardized_training_table(self) -> None:
        """Test the fit-ready table is centred and the test row uses the same scale."""
        table = extreme_value_table()
        fold = make_fold(table, 2)
        train = fold.training_table()
        assert_allclose(train.X.mean(axis=0), 0.0, atol=1e-12)
        expected = (table.X[2] - fold.standardizer.mean) / fold.standardizer.scale
        assert_allclose(fold.test_X, expected[None, :])

    def test_no_standardization(self) -> None:
        """Test covariates pass through unchanged when standardization is off."""
        table = extreme_value_table()
        fold = make_fold(table, 0, standardize=False)
        assert_allclose(fold.test_X, table.X[0:1])

    def test_too_few_rows(self) -> None:
        """Test one observation cannot be cross-validated."""
        with pytest.raises(ValueError):
            list(make_folds(from_arrays([1], [0.0])))


class TestRunLoo:
    """Tests for the leave-one-out loop with a stand-in fitter."""

    def test_failed_fold_masked(self) -> None:
        """Test a failed fold is listed and its column masked."""
        table = extreme_value_table()
        result = run_loo(table, random_seed=0, fold_fitter=fake_fitter)

        assert len(result.folds) == table.n_obs
        assert result.failed == [3]
        assert_array_equal(result.valid_mask, [i != 3 for i in range(table.n_obs)])

        y_rep = result.y_rep()
        assert y_rep.shape == (100, table.n_obs)
        assert np.all(y_rep[:, 3] == -1)
        assert np.all(np.delete(y_rep, 3, axis=1) >= 0)

    def test_truncates_to_common_draw_count(self) -> None:
        """Test folds with more draws are cut to the smallest count."""
        table = extreme_value_table()
        result = run_loo(table, random_seed=0, fold_fitter=fake_fitter)
        assert result.n_draws == 100
        assert_array_equal(result.y_rep()[:, 9], result.folds[9].y_rep[:100])

    def test_summary(self) -> None:
        """Test the summary counts valid folds only."""
        table = extreme_value_table()
        result = run_loo(table, random_seed=0, fold_fitter=fake_fitter)
        summary = result.summary(table.y, prob=0.9)

        assert summary["n_folds"] == 10
        assert summary["n_failed"] == 1
        assert summary["failed"] == [3]
        assert summary["elpd_loo"] == pytest.approx(-18.0)
        assert 0.0 <= summary["coverage"] <= 1.0
        assert np.isnan(result.elpd_pointwise[3])
        assert "failed=1" in repr(result)

    def test_fold_standardizers_recorded(self) -> None:
        """Test each fold keeps its own standardization statistics."""
        table = extreme_value_table()
        result = run_loo(table, random_seed=0, fold_fitter=fake_fitter)
        stats = result.standardization_stats()
        assert len(stats) == 10
        assert stats[3]["mean"] is None
        means = {round(float(s["mean"][0]), 10) for s in stats if s["mean"] is not None}
        assert len(means) == 9

    def test_seeded_reproducibility(self) -> None:
        """Test the same root seed gives the same replicates, folds differ."""
        table = extreme_value_table()
        a = run_loo(table, random_seed=5, fold_fitter=seed_recorder).y_rep()
        b = run_loo(table, random_seed=5, fold_fitter=seed_recorder).y_rep()
        c = run_loo(table, random_seed=6, fold_fitter=seed_recorder).y_rep()
        assert_array_equal(a, b)
        assert not np.array_equal(a, c)
        assert not np.array_equal(a[:, 0], a[:, 1])

    def test_invalid_workers(self) -> None:
        """Test a non-positive worker count is rejected."""
        with pytest.raises(ValueError):
            run_loo(extreme_value_table(), workers=0, fold_fitter=fake_fitter)

    def test_all_failed(self) -> None:
        """Test no replicates are available when every fold fails."""
        folds = [FoldResult(index=i, converged=False) for i in range(3)]
        result = LooResult(folds, n_obs=3)
        assert result.n_draws == 0
        with pytest.raises(ValueError):
            result.y_rep()
        assert "coverage" not in result.summary(np.array([1, 2, 3]))

    def test_result_order_checked(self) -> None:
        """Test fold results must be complete and in row order."""
        folds = [FoldResult(index=i, converged=False) for i in (1, 0)]
        with pytest.raises(ValueError):
            LooResult(folds, n_obs=2)
        with pytest.raises(ValueError):
            LooResult(folds[:1], n_obs=2)


class TestHeldoutLogDensity:
    """Tests for the held-out log predictive density."""

    def test_zero_sigma_matches_poisson(self) -> None:
        """Test the density is the Poisson log-pmf when draws agree and sigma is zero."""
        draws = PosteriorDraws(
            intercept=np.full(50, np.log(4.0)), slope=np.zeros(50), sigma=np.zeros(50)
        )
        elpd = heldout_log_density(
            draws, np.array([[0.7]]), np.array([6]), np.random.default_rng(0)
        )
        assert elpd.shape == (1,)
        assert_allclose(elpd, poisson.logpmf(6, 4.0))

    def test_offsets_favour_extremes(self) -> None:
        """Test fresh offsets raise the density of an extreme count."""
        n = 4000
        plain = PosteriorDraws(
            intercept=np.full(n, np.log(4.0)), slope=np.zeros(n), sigma=np.zeros(n)
        )
        mixed = PosteriorDraws(
            intercept=np.full(n, np.log(4.0)), slope=np.zeros(n), sigma=np.full(n, 1.2)
        )
        X = np.array([[0.0]])
        y = np.array([30])
        rng = np.random.default_rng(1)
        assert heldout_log_density(mixed, X, y, rng)[0] > heldout_log_density(plain, X, y, rng)[0]


class TestFitFold:
    """Tests for fit_fold with the sampler stubbed out."""

    def test_converged_fold(self, monkeypatch) -> None:
        """Test a converged refit yields held-out replicates and a density."""
        seen = {}

        def fake_fit(spec, table, config=None, random_seed=None):
            seen["spec"] = spec
            seen["table"] = table
            rng = np.random.default_rng(0)
            draws = PosteriorDraws(
                intercept=rng.normal(1.5, 0.1, 300),
                slope=rng.normal(0.2, 0.1, 300),
                sigma=np.full(300, 0.7),
            )
            summary = SimpleNamespace(report=_report(), attempts=1)
            return SimpleNamespace(draws=draws, summary=summary)

        monkeypatch.setattr(loo_module, "fit", fake_fit)
        fold = make_fold(extreme_value_table(), 4)
        result = fit_fold(fold, spec=ModelSpec(), random_seed=11)

        assert result.converged
        assert result.index == 4
        assert result.y_rep.shape == (300,)
        assert np.all(result.y_rep >= 0)
        assert np.isfinite(result.elpd)
        assert result.attempts == 1
        assert seen["spec"].retain_olre is False
        assert seen["table"].n_obs == 9
        assert_allclose(seen["table"].X.mean(axis=0), 0.0, atol=1e-12)

    def test_failed_fold(self, monkeypatch) -> None:
        """Test a convergence failure is returned, not raised."""
        report = _report(converged=False)

        def failing_fit(spec, table, config=None, random_seed=None):
            raise ConvergenceError("Sampling did not converge", report, attempts=3)

        monkeypatch.setattr(loo_module, "fit", failing_fit)
        result = fit_fold(make_fold(extreme_value_table(), 0), random_seed=1)

        assert result.converged is False
        assert result.y_rep is None
        assert result.n_draws == 0
        assert result.attempts == 3
        assert result.report is report
        assert "did not converge" in result.error

    @pytest.mark.parametrize(
        "error",
        [
            SamplingError("Bad initial energy"),
            FloatingPointError("overflow encountered in exp"),
            ValueError("array must not contain infs or NaNs"),
        ],
    )
    def test_sampling_error_fold(self, monkeypatch, error) -> None:
        """Test a sampler error becomes a failed fold."""

        def broken_fit(spec, table, config=None, random_seed=None):
            raise error

        monkeypatch.setattr(loo_module, "fit", broken_fit)
        result = fit_fold(make_fold(extreme_value_table(), 2), random_seed=1)

        assert result.converged is False
        assert result.y_rep is None
        assert result.report is None
        assert result.error == f"{type(error).__name__}: {error}"

    def test_sampling_error_in_run_loo(self, monkeypatch) -> None:
        """Test one fold's sampler error does not abort the other folds."""

        full_y = extreme_value_table().y

        def flaky_fit(spec, table, config=None, random_seed=None):
            # Training counts identify the held-out row
            if np.array_equal(table.y, np.delete(full_y, 3)):
                raise SamplingError("Bad initial energy")
            rng = np.random.default_rng(0)
            draws = PosteriorDraws(
                intercept=rng.normal(1.7, 0.3, 200),
                slope=rng.normal(0.1, 0.2, 200),
                sigma=np.full(200, 1.0),
            )
            summary = SimpleNamespace(report=_report(), attempts=1)
            return SimpleNamespace(draws=draws, summary=summary)

        monkeypatch.setattr(loo_module, "fit", flaky_fit)
        result = run_loo(extreme_value_table(), random_seed=1)

        assert result.failed == [3]
        assert "SamplingError" in result.folds[3].error
        y_rep = result.y_rep()
        assert np.all(y_rep[:, 3] == -1)
        assert np.all(np.delete(y_rep, 3, axis=1) >= 0)
