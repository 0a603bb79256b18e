"""Test `bartmcmc`."""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal
from scipy import stats
from scipy.special import gammaln

from bartmcmc import (
    BartMcmc,
    DataTest,
    DataTrain,
    Forest,
    SyntheticData,
    fit_predict,
)
from bartree import BartOptions, Leaf
from tests.util import check_partition


def quiet_options(**kw):
    kw.setdefault('verbose', False)
    return BartOptions(**kw)


@pytest.fixture
def synth():
    return SyntheticData(N_train=20, N_test=5, seed=0).linear(p=2)


class TestData:
    """Test the data containers."""

    def test_scaling(self, data):
        assert data.y.min() == -0.5
        assert data.y.max() == 0.5
        assert_allclose(data.y, (data.y_raw - data.y_min) / (data.y_max - data.y_min) - 0.5)
        assert_allclose(data.unscale(data.y), data.y_raw, rtol=1e-12)

    def test_constant_response(self):
        with pytest.raises(AssertionError, match='constant'):
            DataTrain(np.ones(5), np.arange(10.0).reshape(5, 2))

    def test_row_mismatch(self):
        with pytest.raises(AssertionError):
            DataTrain(np.arange(4.0), np.arange(10.0).reshape(5, 2))

    def test_test_data(self):
        d = DataTest(np.zeros((3, 2)))
        assert d.N == 3
        assert d.J == 2
        assert d.y is None


class TestInitialization:
    """Test the construction of the ensemble."""

    def test_priors(self, data, rng):
        opts = quiet_options(num_trees=4, k=2.0)
        forest = Forest(opts, data, data.X, rng)
        params = forest.leaf_parameters

        beta, *_ = np.linalg.lstsq(data.X, data.y, rcond=None)
        sigma_hat = np.std(data.X @ beta - data.y, ddof=1)
        assert_allclose(params.sigma, sigma_hat, rtol=1e-8)
        assert_allclose(params.sigma_prior, 0.5 / (2.0 * np.sqrt(4)))
        assert params.nu == 3.0
        lam = sigma_hat**2 * stats.ncx2.ppf(0.9, 3.0, 1.0) / 3.0
        assert_allclose(params.lam, lam, rtol=1e-8)

    def test_more_predictors_than_rows(self, rng):
        X = np.random.default_rng(0).random((4, 6))
        data = DataTrain(np.array([0.0, 1.0, 3.0, 2.0]), X)
        forest = Forest(quiet_options(num_trees=2), data, X, rng)
        assert_allclose(forest.leaf_parameters.sigma, np.std(data.y))

    def test_single_leaf_trees(self, data, rng):
        forest = Forest(quiet_options(num_trees=5), data, data.X[:3], rng)
        assert len(forest.trees) == 5
        for tree in forest.trees:
            assert isinstance(tree.root, Leaf)
            assert_array_equal(tree.root.train_data_indices, np.arange(data.N))
        values = [t.root.value for t in forest.trees]
        assert len(set(values)) == 5
        assert_allclose(forest.y_hat, np.full(data.N, np.sum(values)))
        assert_allclose(forest.y_pred, np.full(3, np.sum(values)))

    def test_verbose(self, data, rng, capsys):
        Forest(quiet_options(verbose=True), data, data.X, rng)
        assert 'Sigma hat' in capsys.readouterr().out


class TestForest:
    """Test the ensemble update."""

    def test_running_totals(self, data, rng):
        X_test = SyntheticData(N_train=0, N_test=7, seed=3).linear(p=3)[1][1]
        forest = Forest(quiet_options(num_trees=3), data, X_test, rng)
        for _ in range(30):
            updates, num_leaves = forest.update(data)
            assert 0 <= updates <= 3
            assert num_leaves == [t.num_leaves() for t in forest.trees]
            for tree in forest.trees:
                check_partition(tree, data.N)
        assert_allclose(forest.y_hat, sum(t.fit(data.N) for t in forest.trees), atol=1e-10)
        assert_allclose(forest.y_pred, sum(t.predict(X_test) for t in forest.trees), atol=1e-10)
        assert_allclose(forest.predict(data, X_test), data.unscale(forest.y_pred), atol=1e-9)
        assert forest.leaf_parameters.sigma > 0

    def test_sigma_posterior(self, data, rng):
        forest = Forest(quiet_options(num_trees=2), data, data.X, rng)
        forest.y_hat = data.y.copy()
        params = forest.leaf_parameters

        sigmas = []
        for _ in range(10_000):
            forest._update_sigma(data.y)
            sigmas.append(params.sigma)
        sigmas = np.array(sigmas)

        df = params.nu + data.N
        scaled = params.nu * params.lam / sigmas**2
        assert stats.kstest(scaled, 'chi2', args=(df,)).pvalue > 0.001

        # E[S^(-1/2)] for S ~ chi2(df)
        expected = np.sqrt(params.nu * params.lam) * np.exp(
            gammaln((df - 1) / 2) - gammaln(df / 2)
        ) / np.sqrt(2)
        assert_allclose(sigmas.mean(), expected, rtol=0.01)

    def test_variable_inclusion(self, data, rng):
        forest = Forest(quiet_options(num_trees=3), data, data.X, rng)
        assert_array_equal(forest.variable_inclusion(data.J), np.zeros(data.J))
        for _ in range(30):
            forest.update(data)
        props = forest.variable_inclusion(data.J)
        if any(t.branches() for t in forest.trees):
            assert_allclose(props.sum(), 1.0)
        assert np.all(props >= 0)


class TestFitPredict:
    """Test the whole MCMC run."""

    def test_deterministic(self, synth):
        (y, X), (_, X_test) = synth
        opts = quiet_options(num_trees=1, burn_in=5, num_draws=6)
        y1 = fit_predict(X, y, opts, X_test, seed=42)
        y2 = fit_predict(X, y, opts, X_test, seed=42)
        assert y1.shape == (5,)
        assert np.all(np.isfinite(y1))
        assert_array_equal(y1, y2)
        assert_allclose(
            y1,
            [1.18918398, 1.18918398, 1.98575563, 1.18918398, 1.98575563],
            rtol=1e-6,
        )
        y3 = fit_predict(X, y, opts, X_test, seed=43)
        assert not np.array_equal(y1, y3)

    def test_default_options(self, synth, monkeypatch):
        (y, X), (_, X_test) = synth
        monkeypatch.setattr(
            'bartmcmc.BartOptions',
            lambda: BartOptions(num_draws=3, burn_in=1, verbose=False),
        )
        assert fit_predict(X, y, None, X_test, seed=0).shape == (5,)

    def test_results(self, synth):
        (y, X), (y_test, X_test) = synth
        data = DataTrain(y, X)
        data_test = DataTest(X_test, y_test)
        opts = quiet_options(num_trees=3, burn_in=10, num_draws=25)
        results = BartMcmc(opts, data, data_test, seed=1).estimate()

        assert results.y_hat_draws.shape == (15, 20)
        assert results.y_pred_draws.shape == (15, 5)
        assert results.sigma_draws.shape == (15,)
        assert results.tree_acceptance.shape == (25,)
        assert results.mean_leaf_nodes.shape == (25,)
        assert results.variable_inclusion_props_draws.shape == (15, 2)
        assert np.all(results.sigma_draws > 0)
        assert np.all((results.tree_acceptance >= 0) & (results.tree_acceptance <= 1))
        assert np.all(results.mean_leaf_nodes >= 1)
        assert_allclose(results.y_pred_mean, results.y_pred_draws.mean(axis=0))
        assert_allclose(results.y_hat_mean, results.y_hat_draws.mean(axis=0))
        assert results.time >= 0

    def test_mismatched_predictors(self, synth):
        (y, X), _ = synth
        with pytest.raises(AssertionError):
            BartMcmc(quiet_options(), DataTrain(y, X), DataTest(np.zeros((2, 3))))

    def test_progress(self, synth, capsys):
        (y, X), (_, X_test) = synth
        opts = BartOptions(num_trees=2, burn_in=2, num_draws=5)
        fit_predict(X, y, opts, X_test, seed=0)
        out = capsys.readouterr().out
        for i in (1, 2, 4, 5):
            assert f'Iteration: {i} (' in out
        assert 'Iteration: 3 (' not in out
        assert 'Estimation time' in out

    def test_fits_linear_response(self):
        (y, X), (y_test, X_test) = SyntheticData(N_train=100, N_test=50, seed=1).linear(p=2)
        opts = quiet_options(num_trees=10, burn_in=100, num_draws=300)
        y_pred = fit_predict(X, y, opts, X_test, seed=2)
        rmse = np.sqrt(np.mean((y_pred - y_test) ** 2))
        assert rmse < np.std(y_test)
