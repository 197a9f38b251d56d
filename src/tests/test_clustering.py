"""
Unit tests for PCA + K-means clustering.
"""

import unittest
from unittest import mock
import numpy as np
import pandas as pd
from pairscan.clustering import (
    standardize_returns,
    principal_components,
    choose_num_components,
    choose_num_clusters,
    kmeans,
    KMeansFit,
    fit_auto,
    fit_manual
)
from pairscan.errors import InsufficientDataError, InvalidParameterError


def make_factor_returns(n=500, groups=3, per_group=10, noise=0.2, seed=0):
    """Returns driven by one independent factor per group of series."""
    rng = np.random.RandomState(seed)
    factors = rng.randn(n, groups)
    cols = {}
    truth = {}
    for g in range(groups):
        for i in range(per_group):
            name = f"G{g}S{i:02d}"
            cols[name] = factors[:, g] + noise * rng.randn(n)
            truth[name] = g
    return pd.DataFrame(cols), truth


def make_blobs(seed=0):
    rng = np.random.RandomState(seed)
    centers = np.array([[0.0, 0.0], [5.0, 5.0], [0.0, 5.0]])
    return np.vstack([c + 0.3 * rng.randn(20, 2) for c in centers])


class TestPCA(unittest.TestCase):
    """Test standardization and eigen-decomposition."""

    def setUp(self):
        self.returns, _ = make_factor_returns()

    def test_standardized_moments(self):
        Z = standardize_returns(self.returns)
        np.testing.assert_allclose(Z.mean(axis=0), 0.0, atol=1e-10)
        np.testing.assert_allclose(Z.std(axis=0), 1.0, atol=1e-10)

    def test_constant_column_is_finite(self):
        R = self.returns.to_numpy().copy()
        R[:, 0] = 1.0
        Z = standardize_returns(R)
        self.assertTrue(np.all(np.isfinite(Z)))
        np.testing.assert_allclose(Z[:, 0], 0.0)

    def test_eigenvalues_sorted_and_non_negative(self):
        vals, vecs = principal_components(standardize_returns(self.returns))
        self.assertTrue(np.all(vals >= 0))
        self.assertTrue(np.all(np.diff(vals) <= 1e-12))
        self.assertEqual(vecs.shape, (30, 30))

    def test_explained_variance_ratios(self):
        vals, _ = principal_components(standardize_returns(self.returns))
        ratios = vals / vals.sum()
        self.assertTrue(np.all(ratios >= 0))
        self.assertLessEqual(ratios.sum(), 1.0 + 1e-12)

    def test_component_count_is_smallest_reaching_threshold(self):
        rng = np.random.RandomState(1)
        R = rng.randn(300, 6) @ rng.randn(6, 6)
        vals, _ = principal_components(standardize_returns(R))
        cumulative = np.cumsum(vals) / vals.sum()
        for tau in (0.5, 0.7, 0.9):
            smallest = int(np.argmax(cumulative >= tau)) + 1
            expected = min(max(smallest, 2), 6)
            self.assertEqual(choose_num_components(vals, tau=tau, pcs_cap=8), expected)

    def test_component_clamping(self):
        vals = np.array([5.0, 3.0, 1.0, 1.0])
        self.assertEqual(choose_num_components(vals, tau=0.85), 3)
        self.assertEqual(choose_num_components(vals, tau=0.85, pcs_cap=2), 2)
        self.assertEqual(choose_num_components(np.array([9.0, 0.5, 0.5]), tau=0.85), 2)


class TestClusterCount(unittest.TestCase):
    """Test the series-per-cluster heuristic."""

    def test_heuristic(self):
        self.assertEqual(choose_num_clusters(40, 10), 4)
        self.assertEqual(choose_num_clusters(25, 10), 2)
        self.assertEqual(choose_num_clusters(500, 10), 12)
        self.assertEqual(choose_num_clusters(3, 10), 2)
        self.assertEqual(choose_num_clusters(5, 1), 5)

    def test_bad_target(self):
        with self.assertRaises(InvalidParameterError):
            choose_num_clusters(10, 0)


class TestKMeans(unittest.TestCase):
    """Test K-means with k-means++ seeding."""

    def setUp(self):
        self.X = make_blobs()

    def test_inertia_non_increasing(self):
        for seed in range(5):
            fit = kmeans(self.X, 3, rng=np.random.default_rng(seed))
            self.assertTrue(np.all(np.diff(fit.history) <= 1e-9))

    def test_assignment_to_nearest_centroid(self):
        fit = kmeans(self.X, 3, rng=np.random.default_rng(0))
        d2 = ((self.X[:, None, :] - fit.centroids[None, :, :]) ** 2).sum(axis=2)
        np.testing.assert_array_equal(fit.labels, d2.argmin(axis=1))

    def test_recovers_blobs(self):
        fit = kmeans(self.X, 3, rng=np.random.default_rng(0))
        for block in range(3):
            labels = fit.labels[block * 20:(block + 1) * 20]
            self.assertEqual(len(set(labels)), 1)
        self.assertEqual(len(set(fit.labels)), 3)

    def test_seeded_reproducibility(self):
        a = kmeans(self.X, 3, rng=np.random.default_rng(42))
        b = kmeans(self.X, 3, rng=np.random.default_rng(42))
        np.testing.assert_array_equal(a.labels, b.labels)
        self.assertEqual(a.inertia, b.inertia)

    def test_identical_points(self):
        """Zero total distance falls back to uniform seeding."""
        fit = kmeans(np.ones((10, 2)), 3, rng=np.random.default_rng(0))
        self.assertEqual(fit.inertia, 0.0)

    def test_empty_cluster_reseeded(self):
        """A cluster left empty gets its centroid redrawn from the data."""
        X = np.vstack([np.zeros((10, 2)), np.ones((10, 2))])
        rng = mock.Mock(wraps=np.random.default_rng(0))
        fit = kmeans(X, 3, rng=rng)

        self.assertNotIn(2, set(fit.labels))
        # two seeding draws, then one per reseed
        self.assertGreaterEqual(rng.integers.call_count, 3)
        for centroid in fit.centroids:
            self.assertTrue(np.any(np.all(X == centroid, axis=1)))
        self.assertEqual(fit.inertia, 0.0)

    def test_invalid_k(self):
        with self.assertRaises(InvalidParameterError):
            kmeans(self.X, 0)
        with self.assertRaises(InvalidParameterError):
            kmeans(self.X, len(self.X) + 1)


class TestAutoMode(unittest.TestCase):
    """Test automatic clustering."""

    def setUp(self):
        self.returns, self.truth = make_factor_returns()

    def test_recovers_factor_groups(self):
        result = fit_auto(self.returns)
        self.assertEqual(result.k, 3)
        self.assertEqual(len(result.labels), 30)
        groups = {}
        for name, label in result.cluster_map().items():
            groups.setdefault(self.truth[name], set()).add(label)
        self.assertTrue(all(len(labels) == 1 for labels in groups.values()))
        self.assertEqual(len({next(iter(s)) for s in groups.values()}), 3)

    def test_outputs(self):
        result = fit_auto(self.returns)
        pcs = result.loadings.shape[1]
        self.assertGreaterEqual(pcs, 2)
        self.assertEqual(result.loadings.shape[0], 30)
        self.assertEqual(len(result.explained_variance), pcs)
        self.assertGreaterEqual(result.explained_variance_ratio.sum(), 0.85)
        self.assertEqual(sum(len(m) for m in result.members().values()), 30)

    def test_array_input_needs_names(self):
        with self.assertRaises(InvalidParameterError):
            fit_auto(self.returns.to_numpy())
        result = fit_auto(self.returns.to_numpy(), series=list(self.returns.columns))
        self.assertEqual(result.series, list(self.returns.columns))

    def test_single_series_rejected(self):
        with self.assertRaises(InsufficientDataError):
            fit_auto(self.returns.iloc[:, :1])


class TestManualMode(unittest.TestCase):
    """Test manual clustering with size constraints and early stopping."""

    def setUp(self):
        self.returns, self.truth = make_factor_returns()

    def test_fixed_k(self):
        result = fit_manual(self.returns, pcs=3, k=3, min_size=5, max_size=15, runs=5)
        self.assertEqual(result.k, 3)
        sizes = np.bincount(result.labels, minlength=3)
        self.assertTrue(np.all((sizes >= 5) & (sizes <= 15)))

    def test_fallback_without_admissible_result(self):
        with self.assertLogs('pairscan.clustering', level='WARNING'):
            result = fit_manual(self.returns, pcs=3, k_min=2, k_max=4, min_size=25, max_size=30, runs=2)
        self.assertEqual(result.k, 2)

    def test_pcs_clamped(self):
        result = fit_manual(self.returns, pcs=100, k=3, min_size=1, max_size=30, runs=1)
        self.assertEqual(result.loadings.shape[1], 20)
        result = fit_manual(self.returns, pcs=0, k=3, min_size=1, max_size=30, runs=1)
        self.assertEqual(result.loadings.shape[1], 1)

    def test_search_respects_size_window(self):
        result = fit_manual(self.returns, pcs=3, k_min=2, k_max=6, min_size=5, max_size=15, runs=5)
        sizes = np.bincount(result.labels, minlength=result.k)
        self.assertTrue(np.all((sizes >= 5) & (sizes <= 15)))

    def test_progress_callback(self):
        fractions = []
        fit_manual(self.returns, pcs=3, k_min=2, k_max=5, runs=3, progress=fractions.append)
        self.assertTrue(fractions)
        self.assertEqual(fractions[-1], 1.0)
        self.assertTrue(all(b >= a for a, b in zip(fractions, fractions[1:])))

    def test_seed_reproducibility(self):
        a = fit_manual(self.returns, pcs=4, k_min=2, k_max=6, runs=4, seed=7)
        b = fit_manual(self.returns, pcs=4, k_min=2, k_max=6, runs=4, seed=7)
        np.testing.assert_array_equal(a.labels, b.labels)
        self.assertEqual(a.k, b.k)

    def test_injected_generator(self):
        a = fit_manual(self.returns, pcs=3, k=3, runs=2, rng=np.random.default_rng(3))
        b = fit_manual(self.returns, pcs=3, k=3, runs=2, rng=np.random.default_rng(3))
        np.testing.assert_array_equal(a.labels, b.labels)

    def test_invalid_size_window(self):
        with self.assertRaises(InvalidParameterError):
            fit_manual(self.returns, min_size=10, max_size=5)


def scripted_kmeans(inertias):
    """Stand-in for kmeans returning balanced labels and inertias from a per-K schedule."""
    calls = []

    def fake(points, k, max_iter=100, rng=None):
        calls.append(k)
        schedule = inertias[k]
        inertia = schedule[min(calls.count(k), len(schedule)) - 1]
        labels = np.arange(len(points)) % k
        return KMeansFit(labels, np.zeros((k, points.shape[1])), inertia, 1, [inertia])

    return fake, calls


class TestManualSearchHeuristics(unittest.TestCase):
    """Test restart and K-sweep early stopping in manual mode."""

    def setUp(self):
        self.returns, _ = make_factor_returns()

    def test_restarts_stop_after_three_flat_runs(self):
        fake, calls = scripted_kmeans({3: [1.0]})
        with mock.patch('pairscan.clustering.kmeans', side_effect=fake):
            result = fit_manual(self.returns, pcs=3, k=3, runs=10)
        self.assertEqual(calls, [3, 3, 3])
        self.assertEqual(result.inertia, 1.0)

    def test_restarts_continue_while_improving(self):
        fake, calls = scripted_kmeans({3: [10.0 / 2 ** i for i in range(10)]})
        with mock.patch('pairscan.clustering.kmeans', side_effect=fake):
            result = fit_manual(self.returns, pcs=3, k=3, runs=10)
        self.assertEqual(len(calls), 10)
        self.assertAlmostEqual(result.inertia, 10.0 / 2 ** 9)

    def test_small_within_k_gain_stops(self):
        """Third admissible run improving by less than 0.1% ends the restarts."""
        fake, calls = scripted_kmeans({3: [2.0, 1.0, 0.9995, 0.5]})
        with mock.patch('pairscan.clustering.kmeans', side_effect=fake):
            result = fit_manual(self.returns, pcs=3, k=3, runs=10)
        self.assertEqual(len(calls), 3)
        self.assertEqual(result.inertia, 0.9995)

    def test_inadmissible_runs_do_not_count(self):
        """Runs breaking the size window are not admissible restarts."""
        fake, calls = scripted_kmeans({3: [1.0]})
        with mock.patch('pairscan.clustering.kmeans', side_effect=fake):
            with self.assertLogs('pairscan.clustering', level='WARNING'):
                fit_manual(self.returns, pcs=3, k=3, runs=5, min_size=11, max_size=20)
        # five restarts plus the unconstrained fallback fit
        self.assertEqual(calls, [3] * 5 + [3])

    def test_k_sweep_stops_on_small_gain(self):
        fake, calls = scripted_kmeans({2: [10.0], 3: [5.0], 4: [4.99], 5: [1.0], 6: [0.5]})
        with mock.patch('pairscan.clustering.kmeans', side_effect=fake):
            result = fit_manual(self.returns, pcs=3, k_min=2, k_max=6, min_size=1, max_size=30, runs=1)
        self.assertEqual(calls, [2, 3, 4])
        self.assertEqual(result.k, 4)

    def test_k_sweep_continues_on_large_gain(self):
        fake, calls = scripted_kmeans({2: [10.0], 3: [5.0], 4: [2.5], 5: [1.2], 6: [0.6]})
        with mock.patch('pairscan.clustering.kmeans', side_effect=fake):
            result = fit_manual(self.returns, pcs=3, k_min=2, k_max=6, min_size=1, max_size=30, runs=1)
        self.assertEqual(calls, [2, 3, 4, 5, 6])
        self.assertEqual(result.k, 6)

    def test_real_kmeans_is_counted(self):
        """Identical restarts on separated groups stop at the third admissible run."""
        with mock.patch('pairscan.clustering.kmeans', wraps=kmeans) as km:
            fit_manual(self.returns, pcs=3, k=3, min_size=1, max_size=30, runs=10)
        self.assertGreaterEqual(km.call_count, 3)
        self.assertLess(km.call_count, 10)


if __name__ == '__main__':
    unittest.main()
