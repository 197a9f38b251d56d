"""
Unit tests for grid validation.

Tests grid parsing, the adaptive noise grid, per-pair evaluation, ranking and
the multi-pair search.
"""

import unittest
from unittest import mock
import numpy as np
import pandas as pd
from pandas.testing import assert_frame_equal
from pairscan import hedge
from pairscan.backtest import BacktestReport, SizingMode
from pairscan.cointegration import CointegrationResult, ols_fit
from pairscan.config import ResearchConfig
from pairscan.errors import InsufficientDataError, InvalidParameterError
from pairscan.hedge import KalmanHedge, StaticHedge, static_residuals
from pairscan.pipeline import run_validation_stage
from pairscan.tables import validation_table
from pairscan.utils import residual_stats
from pairscan.validation import (
    ValidationGrid,
    ValidationConfig,
    ValidationResult,
    PairCandidate,
    parse_grid_values,
    auto_noise_grid,
    noise_pairs,
    evaluate_pair,
    rank_results,
    grid_search_validation,
    log_observer,
    select_candidates,
    select_top_configs
)


def make_log_prices(n=600, seed=0):
    """Two cointegrated log-price pairs (A, B) and (C, D) plus an unrelated series E."""
    rng = np.random.RandomState(seed)
    cols = {}
    for dep, indep in (('A', 'B'), ('C', 'D')):
        x = 4.0 + np.cumsum(rng.randn(n) * 0.01)
        u = np.zeros(n)
        for t in range(1, n):
            u[t] = 0.9 * u[t - 1] + rng.randn() * 0.005
        cols[indep] = x
        cols[dep] = 0.5 + 1.2 * x + u
    cols['E'] = 3.0 + np.cumsum(rng.randn(n) * 0.01)
    index = pd.date_range('2024-01-01', periods=n, freq='h')
    return pd.DataFrame(cols, index=index)[['A', 'B', 'C', 'D', 'E']]


def make_candidate(train, y, x):
    fit = ols_fit(train[y].to_numpy(), train[x].to_numpy())
    mu, sigma = residual_stats(fit.residuals)
    return PairCandidate(y, x, fit.alpha, fit.beta, 6.6, mu, sigma)


def make_result(y, x, sharpe):
    config = ValidationConfig(2.0, 0.5, 3.0, SizingMode.FIXED, StaticHedge())
    return ValidationResult(y, x, config, BacktestReport(sharpe=sharpe), 0.0, 1.0, None)


class TestGrid(unittest.TestCase):
    """Test grid construction and parsing."""

    def test_defaults(self):
        grid = ValidationGrid()
        self.assertEqual(grid.z_entry, (1.0, 1.5, 2.0))
        self.assertEqual(grid.z_exit, (0.5, 1.0))
        self.assertEqual(grid.z_stop, (3.0, 4.0))
        self.assertEqual(grid.sizing, (SizingMode.FIXED, SizingMode.HALF_LIFE_SCALED))
        self.assertFalse(grid.has_explicit_noise)
        self.assertEqual(len(grid.threshold_grid()), 24)

    def test_from_strings(self):
        grid = ValidationGrid.from_strings(z_entry="2, 2.5", z_exit="0.5", z_stop="none,4",
                                           sizing="VolScaled", q="1e-6", r="1e-3,1e-2")
        self.assertEqual(grid.z_entry, (2.0, 2.5))
        self.assertEqual(grid.z_stop, (None, 4.0))
        self.assertEqual(grid.sizing, (SizingMode.VOL_SCALED,))
        self.assertTrue(grid.has_explicit_noise)

    def test_malformed_values(self):
        with self.assertRaises(InvalidParameterError):
            parse_grid_values("1,abc")
        with self.assertRaises(InvalidParameterError):
            parse_grid_values("1,nan")
        with self.assertRaises(InvalidParameterError):
            ValidationGrid(z_entry=())
        with self.assertRaises(InvalidParameterError):
            ValidationGrid(q=(0.0,), r=(1.0,))

    def test_parse_skips_blanks(self):
        self.assertEqual(parse_grid_values(" 1, ,2 "), (1.0, 2.0))
        self.assertEqual(parse_grid_values(""), ())


class TestNoiseGrid(unittest.TestCase):
    """Test the adaptive (Q, R) grid."""

    def assert_clean(self, values):
        self.assertEqual(list(values), sorted(set(values)))
        self.assertTrue(all(0 < v < 1e3 for v in values))

    def test_fallback_without_half_life(self):
        for hl in (None, 0.5, float('nan')):
            q, r = auto_noise_grid(hl, 0.1)
            self.assertEqual(len(q), 10)
            self.assertEqual(q[0], 1e-9)
            self.assertEqual(q[-1], 1.0)
            np.testing.assert_allclose(r, [0.01 * m for m in (1e-3, 1e-2, 0.1, 1, 10, 100)])

    def test_fast_band_uses_fixed_q(self):
        q, r = auto_noise_grid(3.0, 0.1)
        self.assertEqual(q[0], 1e-9)
        self.assertEqual(q[-1], 1e-4)
        self.assertEqual(len(r), 14)

    def test_bands_center_on_inverse_square(self):
        for hl, n_q in ((10.0, 12), (50.0, 13), (200.0, 12)):
            q, r = auto_noise_grid(hl, 0.1)
            self.assertEqual(len(q), n_q)
            self.assertTrue(np.any(np.isclose(q, 1.0 / hl ** 2)))
            self.assert_clean(q)
            self.assert_clean(r)

    def test_large_sigma_drops_values(self):
        _, r = auto_noise_grid(10.0, 10.0)
        self.assertTrue(all(v < 1e3 for v in r))
        self.assertLess(len(r), 12)

    def test_ratio_filter(self):
        pairs = noise_pairs([1.0, 1e-9, 1e-4], [1e-5, 1.0])
        self.assertNotIn((1.0, 1e-5), pairs)
        self.assertNotIn((1e-9, 1.0), pairs)
        self.assertIn((1e-4, 1.0), pairs)
        self.assertIn((1.0, 1.0), pairs)


class TestEvaluatePair(unittest.TestCase):
    """Test per-pair grid evaluation."""

    def setUp(self):
        self.prices = make_log_prices()
        self.train = self.prices.iloc[:480]
        self.valid = self.prices.iloc[480:540]
        self.candidate = make_candidate(self.train, 'A', 'B')

    def test_static_grid_size_and_order(self):
        results = evaluate_pair(self.candidate, self.valid['A'], self.valid['B'], modes=('static',))
        self.assertEqual(len(results), 24)
        self.assertTrue(all(r.config.mode == 'static' for r in results))
        sharpes = [r.sharpe for r in results]
        self.assertEqual(sharpes, sorted(sharpes, reverse=True))

    def test_kalman_runs_once_per_noise_pair(self):
        grid = ValidationGrid(q=(1e-6, 1e-4), r=(1e-3, 1e-2))
        with mock.patch('pairscan.validation.run_kalman_hedge', wraps=hedge.run_kalman_hedge) as kf:
            results = evaluate_pair(self.candidate, self.valid['A'], self.valid['B'], grid)
        self.assertEqual(kf.call_count, 4)
        kalman = [r for r in results if r.config.mode == 'kalman']
        self.assertEqual(len(kalman) % 24, 0)
        self.assertTrue(all(isinstance(r.config.hedge, KalmanHedge) for r in kalman))
        self.assertTrue(all(r.config.q is None for r in results if r.config.mode == 'static'))

    def test_auto_grid_reported_to_observer(self):
        events = []
        evaluate_pair(self.candidate, self.valid['A'], self.valid['B'],
                      observer=lambda e, p: events.append((e, p)))
        names = [e for e, _ in events]
        self.assertEqual(names, ['auto_noise_grid', 'kalman_summary'])
        summary = events[1][1]
        self.assertEqual(summary['tested'], summary['ratio_filtered'] + summary['diverged'] + summary['valid'])

    def test_divergence_guard_rejects_noise_pairs(self):
        """A tiny training sigma makes every Kalman path look divergent."""
        c = self.candidate
        tight = PairCandidate(c.series_y, c.series_x, c.alpha, c.beta, c.half_life, c.mu_train, 1e-9)
        events = []
        results = evaluate_pair(tight, self.valid['A'], self.valid['B'],
                                ValidationGrid(q=(1e-6,), r=(1e-3,)),
                                observer=lambda e, p: events.append((e, p)))
        self.assertFalse([r for r in results if r.config.mode == 'kalman'])
        self.assertEqual(events[-1][1]['diverged'], 1)

    def test_short_window_raises(self):
        with self.assertRaises(InsufficientDataError):
            evaluate_pair(self.candidate, self.valid['A'][:49], self.valid['B'][:49])

    def test_unknown_mode(self):
        with self.assertRaises(InvalidParameterError):
            evaluate_pair(self.candidate, self.valid['A'], self.valid['B'], modes=('rolling',))


class TestRanking(unittest.TestCase):
    """Test stable ranking and per-pair selection."""

    def test_stable_descending_with_nan_last(self):
        results = [make_result('A', 'B', 1.0), make_result('C', 'D', float('nan')),
                   make_result('E', 'F', 2.0), make_result('G', 'H', 1.0)]
        ranked = rank_results(results)
        self.assertEqual([r.series_y for r in ranked], ['E', 'A', 'G', 'C'])

    def test_select_top_configs(self):
        ranked = rank_results([make_result('A', 'B', 3.0), make_result('A', 'B', 2.0),
                               make_result('C', 'D', 1.5), make_result('A', 'B', 1.0)])
        top1 = select_top_configs(ranked, 1)
        self.assertEqual([(r.series_y, r.sharpe) for r in top1], [('A', 3.0), ('C', 1.5)])
        top2 = select_top_configs(ranked, 2)
        self.assertEqual([r.sharpe for r in top2], [3.0, 2.0, 1.5])
        with self.assertRaises(InvalidParameterError):
            select_top_configs(ranked, 0)


class TestGridSearch(unittest.TestCase):
    """Test the multi-pair search."""

    def setUp(self):
        self.prices = make_log_prices()
        train = self.prices.iloc[:480]
        self.valid = self.prices.iloc[480:540]
        self.candidates = [make_candidate(train, 'A', 'B'), make_candidate(train, 'C', 'D')]
        self.grid = ValidationGrid(q=(1e-6, 1e-5), r=(1e-4, 1e-3))

    def test_repeatable_tables(self):
        a = grid_search_validation(self.candidates, self.valid, self.grid)
        b = grid_search_validation(self.candidates, self.valid, self.grid)
        assert_frame_equal(validation_table(a), validation_table(b))
        self.assertEqual(validation_table(a).to_csv(), validation_table(b).to_csv())

    def test_parallel_matches_serial(self):
        serial = grid_search_validation(self.candidates, self.valid, self.grid, n_jobs=1)
        parallel = grid_search_validation(self.candidates, self.valid, self.grid, n_jobs=2)
        assert_frame_equal(validation_table(serial), validation_table(parallel))

    def test_failing_pair_is_skipped(self):
        bad = PairCandidate('A', 'ZZZ', 0.0, 1.0, None, 0.0, 1.0)
        events = []
        results = grid_search_validation([bad] + self.candidates, self.valid, self.grid,
                                         observer=lambda e, p: events.append((e, p)))
        skipped = [p for e, p in events if e == 'pair_skipped']
        self.assertEqual(len(skipped), 1)
        self.assertEqual(skipped[0]['series_x'], 'ZZZ')
        self.assertEqual({r.pair for r in results}, {('A', 'B'), ('C', 'D')})

    def test_short_window_pair_is_skipped(self):
        events = []
        results = grid_search_validation(self.candidates, self.valid.iloc[:40], self.grid,
                                         observer=lambda e, p: events.append((e, p)))
        self.assertEqual(results, [])
        self.assertEqual(sum(e == 'pair_skipped' for e, _ in events), 2)

    def test_progress_and_observer_order(self):
        fractions, events = [], []
        grid_search_validation(self.candidates, self.valid, self.grid,
                               progress=fractions.append,
                               observer=lambda e, p: events.append((e, p.get('series_y'))))
        self.assertEqual(fractions, [0.5, 1.0])
        done = [s for e, s in events if e == 'pair_done']
        self.assertEqual(done, ['A', 'C'])

    def test_log_observer(self):
        with self.assertLogs('pairscan.validation', level='INFO') as logs:
            grid_search_validation(self.candidates, self.valid, ValidationGrid(), observer=log_observer)
        self.assertTrue(any('[Auto Q/R]' in line for line in logs.output))


class TestSelectCandidates(unittest.TestCase):
    """Test candidate filtering from cointegration results."""

    def setUp(self):
        self.train = make_log_prices().iloc[:480]

    def coint(self, y, x, pass_5, pass_10, hl):
        fit = ols_fit(self.train[y].to_numpy(), self.train[x].to_numpy())
        return CointegrationResult(y, x, fit.alpha, fit.beta, -3.0, 0, 479, hl,
                                   pass_5, pass_10, pass_10, 0.04, 0)

    def test_alpha_levels(self):
        results = [self.coint('A', 'B', True, True, 6.0), self.coint('C', 'D', False, True, 6.0),
                   self.coint('E', 'B', False, False, 6.0)]
        self.assertEqual([c.series_y for c in select_candidates(results, self.train, 5)], ['A'])
        self.assertEqual([c.series_y for c in select_candidates(results, self.train, 10)], ['A', 'C'])
        with self.assertRaises(InvalidParameterError):
            select_candidates(results, self.train, 7)

    def test_half_life_bounds(self):
        results = [self.coint('A', 'B', True, True, 6.0), self.coint('C', 'D', True, True, None),
                   self.coint('B', 'A', True, True, 60.0)]
        kept = select_candidates(results, self.train, 5, hl_min=2.0, hl_max=50.0)
        self.assertEqual([(c.series_y, c.series_x) for c in kept], [('A', 'B')])

    def test_training_statistics(self):
        res = self.coint('A', 'B', True, True, 6.0)
        cand = select_candidates([res], self.train)[0]
        resid = static_residuals(self.train['A'], self.train['B'], res.alpha, res.beta)
        self.assertAlmostEqual(cand.mu_train, float(np.mean(resid)))
        self.assertAlmostEqual(cand.sigma_train, float(np.std(resid)))

    def test_missing_series_skipped(self):
        """A stale row naming an absent series is skipped, the rest still selected."""
        stale = CointegrationResult('A', 'GONE', 0.0, 1.0, -4.0, 0, 479, 6.0,
                                    True, True, True, 0.01, 0)
        results = [stale, self.coint('A', 'B', True, True, 6.0)]
        with self.assertLogs('pairscan.validation', level='WARNING') as logs:
            kept = select_candidates(results, self.train)
        self.assertEqual([(c.series_y, c.series_x) for c in kept], [('A', 'B')])
        self.assertTrue(any('GONE' in line for line in logs.output))

    def test_validation_stage_survives_missing_series(self):
        stale = CointegrationResult('GONE', 'B', 0.0, 1.0, -4.0, 0, 479, 6.0,
                                    True, True, True, 0.01, 0)
        valid = make_log_prices().iloc[480:540]
        config = ResearchConfig(modes=('static',), z_entry=(2.0,), z_exit=(0.5,), z_stop=(3.0,),
                                sizing=(SizingMode.FIXED,))
        candidates, results = run_validation_stage([stale, self.coint('A', 'B', True, True, 6.0)],
                                                   self.train, valid, config, observer=None)
        self.assertEqual([(c.series_y, c.series_x) for c in candidates], [('A', 'B')])
        self.assertEqual({r.pair for r in results}, {('A', 'B')})


if __name__ == '__main__':
    unittest.main()
