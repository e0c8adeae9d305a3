from __future__ import annotations

import math
import unittest
from typing import Optional
from unittest import mock

import numpy as np

import eg_evaluate
from eg_config import Configuration
from eg_evaluate import EvaluationResult, Track
from eg_signal import PipelineError, Trace


SCENARIO = Trace([0.0, 10.0, 20.0, 30.0, 40.0, 50.0], [100.0, 102.0, 105.0, 103.0, 107.0, 110.0])
PASSTHROUGH = Configuration(
    smoother="none",
    enable_outlier_correction=False,
    enable_capping=False,
    resample_spacing_m=10.0,
)


def _result(
    track: str,
    gain: float,
    official: Optional[float],
    loss: Optional[float] = None,
    raw_gain: Optional[float] = None,
    raw_loss: Optional[float] = None,
    terrain: str = "hilly",
    status: str = "ok",
) -> EvaluationResult:
    loss = gain if loss is None else loss
    raw_gain = gain if raw_gain is None else raw_gain
    raw_loss = loss if raw_loss is None else raw_loss
    return EvaluationResult(
        track=track,
        config_index=0,
        status=status,  # type: ignore[arg-type]
        official_gain=official,
        raw_gain=raw_gain,
        raw_loss=raw_loss,
        gain=gain,
        loss=loss,
        ratio=loss / gain * 100.0 if gain > 0 else 100.0,
        accuracy=gain / official * 100.0 if official else None,
        terrain=terrain,  # type: ignore[arg-type]
    )


class TestPipeline(unittest.TestCase):
    def test_scenario_passthrough(self) -> None:
        out = eg_evaluate.run_pipeline(SCENARIO, PASSTHROUGH)
        self.assertEqual(len(out.trace), 6)
        self.assertAlmostEqual(out.gain, 12.0)
        self.assertAlmostEqual(out.loss, 2.0)
        self.assertIsNone(out.epsilon_used)

    def test_scenario_with_each_smoother_keeps_length(self) -> None:
        for smoother in ("gaussian", "butterworth", "none"):
            cfg = Configuration(smoother=smoother, resample_spacing_m=10.0)
            out = eg_evaluate.run_pipeline(SCENARIO, cfg)
            self.assertEqual(len(out.trace), 6, smoother)

    def test_spike_does_not_reach_gain(self) -> None:
        d = np.arange(0.0, 210.0, 10.0)
        e = np.full(d.size, 100.0)
        e[10] = 115.0
        out = eg_evaluate.run_pipeline(Trace(d, e), Configuration(resample_spacing_m=10.0))
        self.assertGreater(out.outlier_count, 0)
        self.assertLess(out.gain, 1.0)
        self.assertLess(out.loss, 1.0)

    def test_adaptive_deadzone_reports_epsilon(self) -> None:
        d = np.arange(0.0, 500.0, 1.0)
        trace = Trace(d, 100.0 + 10.0 * np.sin(d / 40.0))
        out = eg_evaluate.run_pipeline(trace, Configuration(smoother="butterworth", deadzone_mode="adaptive"))
        self.assertIsNotNone(out.epsilon_used)
        self.assertIsNotNone(out.cutoff_used)
        self.assertLessEqual(out.epsilon_used, 0.5)

    def test_adaptive_deadzone_drops_steps_below_epsilon(self) -> None:
        d = np.arange(0.0, 100.0, 1.0)
        trace = Trace(d, 100.0 + 0.05 * d)
        cfg = Configuration(
            smoother="none",
            deadzone_mode="adaptive",
            enable_outlier_correction=False,
            enable_capping=False,
        )
        out = eg_evaluate.run_pipeline(trace, cfg)
        self.assertAlmostEqual(out.epsilon_used, 0.09)
        self.assertEqual(out.gain, 0.0)
        self.assertEqual(out.loss, 0.0)

    def test_directional_deadzone_lowers_gain(self) -> None:
        naive = eg_evaluate.run_pipeline(SCENARIO, PASSTHROUGH)
        cfg = Configuration(
            smoother="none",
            enable_outlier_correction=False,
            enable_capping=False,
            resample_spacing_m=10.0,
            deadzone_mode="directional",
            gain_threshold_m=5.5,
            loss_threshold_m=20.0,
        )
        zoned = eg_evaluate.run_pipeline(SCENARIO, cfg)
        self.assertAlmostEqual(zoned.gain, 7.0)
        self.assertAlmostEqual(zoned.loss, 0.0)
        self.assertLess(zoned.gain, naive.gain)

    def test_spike_rejection_uses_terrain_threshold(self) -> None:
        d = np.arange(0.0, 100.0, 10.0)
        e = np.full(d.size, 100.0)
        e[5] = 106.0
        cfg = Configuration(
            smoother="none",
            enable_outlier_correction=False,
            enable_capping=False,
            resample_spacing_m=10.0,
            enable_spike_rejection=True,
        )
        out = eg_evaluate.run_pipeline(Trace(d, e), cfg)
        self.assertEqual(out.terrain, "mountainous")
        self.assertEqual(out.spike_count, 0)
        flat_cfg = Configuration(**{**cfg.as_row(), "spike_threshold_mountainous": 3.0})
        out = eg_evaluate.run_pipeline(Trace(d, e), flat_cfg)
        self.assertEqual(out.spike_count, 1)
        self.assertAlmostEqual(out.gain, 0.0)


class TestEvaluate(unittest.TestCase):
    def test_accuracy_against_ground_truth(self) -> None:
        r = eg_evaluate.evaluate(PASSTHROUGH, Track("scenario.csv", SCENARIO), 12.0, config_index=3)
        self.assertEqual(r.status, "ok")
        self.assertEqual(r.config_index, 3)
        self.assertAlmostEqual(r.accuracy, 100.0)
        self.assertAlmostEqual(r.ratio, 2.0 / 12.0 * 100.0)
        self.assertAlmostEqual(r.raw_gain, 12.0)

    def test_unknown_ground_truth(self) -> None:
        for official in (None, 0.0):
            r = eg_evaluate.evaluate(PASSTHROUGH, Track("scenario.csv", SCENARIO), official)
            self.assertIsNone(r.accuracy)
            self.assertIsNone(r.official_gain)

    def test_failure_becomes_error_result(self) -> None:
        with mock.patch.object(eg_evaluate, "run_pipeline", side_effect=PipelineError("boom")):
            with self.assertLogs(level="WARNING"):
                r = eg_evaluate.evaluate(PASSTHROUGH, Track("bad.csv", SCENARIO), 12.0)
        self.assertEqual(r.status, "error")
        self.assertIn("boom", r.error)
        self.assertIsNone(r.accuracy)

    def test_resample_ceiling_is_reported(self) -> None:
        trace = Trace([0.0, 10_000.0, 20_000.0], [100.0, 150.0, 120.0])
        cfg = Configuration(resample_spacing_m=0.1, enable_capping=False)
        with self.assertLogs(level="WARNING"):
            r = eg_evaluate.evaluate(cfg, Track("long.csv", trace), 50.0)
        self.assertEqual(r.status, "resample_limit")
        self.assertAlmostEqual(r.gain, 50.0)
        self.assertEqual(r.samples, 3)

    def test_as_row(self) -> None:
        r = eg_evaluate.evaluate(PASSTHROUGH, Track("scenario.csv", SCENARIO), 12.0)
        row = r.as_row()
        self.assertEqual(row["track"], "scenario.csv")
        self.assertIn("accuracy", row)


class TestGroundTruth(unittest.TestCase):
    def test_lookup_is_case_insensitive(self) -> None:
        truth = eg_evaluate.normalize_ground_truth({"Alps.GPX": 1200, "flat.gpx": 0})
        self.assertEqual(eg_evaluate.lookup_ground_truth(truth, "alps.gpx"), 1200.0)
        self.assertEqual(eg_evaluate.lookup_ground_truth(truth, "data/ALPS.gpx"), 1200.0)
        self.assertIsNone(eg_evaluate.lookup_ground_truth(truth, "flat.gpx"))
        self.assertIsNone(eg_evaluate.lookup_ground_truth(truth, "missing.gpx"))


class TestAggregation(unittest.TestCase):
    def test_band_counts_and_weighted_score(self) -> None:
        results = [_result(f"t{i}", acc, 100.0) for i, acc in enumerate([100.0, 96.0, 91.0, 86.0, 81.0, 70.0])]
        score = eg_evaluate.aggregate_results(0, Configuration(), results)
        self.assertEqual(score.band_counts, (1, 2, 3, 4, 5))
        self.assertEqual(score.outside_count, 1)
        self.assertAlmostEqual(score.weighted_accuracy_score, 10 + 6 + 3 + 1.5 + 1 - 5)
        self.assertAlmostEqual(score.success_rate, 50.0)
        self.assertEqual(score.best_accuracy, 100.0)
        self.assertEqual(score.worst_accuracy, 70.0)

    def test_error_score(self) -> None:
        expected = 0.4 * (13.0 / 3.0) + 0.25 * 10.0 + 3.0 * 1 + 1.0 * 2
        self.assertAlmostEqual(eg_evaluate.error_score([100.0, 103.0, 110.0]), expected)
        self.assertTrue(math.isnan(eg_evaluate.error_score([])))

    def test_unknown_truth_counts_for_balance_only(self) -> None:
        results = [_result("known", 100.0, 100.0), _result("unknown", 50.0, None, loss=50.0)]
        score = eg_evaluate.aggregate_results(0, Configuration(), results)
        self.assertEqual(score.n_scored, 1)
        self.assertEqual(score.balance_counts, (2, 2))
        self.assertEqual(sum(score.band_counts[:1]), 1)

    def test_errors_are_excluded(self) -> None:
        results = [
            _result("ok", 100.0, 100.0),
            EvaluationResult(track="bad", config_index=0, status="error", error="x"),
        ]
        score = eg_evaluate.aggregate_results(0, Configuration(), results)
        self.assertEqual(score.n_tracks, 2)
        self.assertEqual(score.n_failed, 1)
        self.assertEqual(score.n_scored, 1)

    def test_preservation_compares_reductions(self) -> None:
        results = [_result("t", 90.0, 100.0, loss=80.0, raw_gain=100.0, raw_loss=100.0)]
        score = eg_evaluate.aggregate_results(0, Configuration(), results)
        self.assertAlmostEqual(score.gain_reduction_pct, 10.0)
        self.assertAlmostEqual(score.loss_reduction_pct, 20.0)
        self.assertAlmostEqual(score.preservation_score, 90.0)

    def test_terrain_scores_group_rolling_with_flat(self) -> None:
        results = [
            _result("a", 100.0, 100.0, terrain="flat"),
            _result("b", 95.0, 100.0, terrain="rolling"),
            _result("c", 120.0, 100.0, terrain="mountainous"),
        ]
        scores = eg_evaluate.terrain_scores(results)
        self.assertAlmostEqual(scores["flat"], 7.5)
        self.assertAlmostEqual(scores["hilly"], 0.0)
        self.assertAlmostEqual(scores["mountainous"], 0.0)

    def test_empty_corpus_scores_are_nan(self) -> None:
        score = eg_evaluate.aggregate_results(0, Configuration(), [])
        self.assertTrue(math.isnan(score.combined_score))
        self.assertTrue(math.isnan(score.error_score))

    def test_as_row_flattens_bands(self) -> None:
        score = eg_evaluate.aggregate_results(4, Configuration(alpha=20.0), [_result("t", 100.0, 100.0)])
        row = score.as_row()
        self.assertEqual(row["config_index"], 4)
        self.assertEqual(row["within_98_102"], 1)
        self.assertIn("alpha=20", row["config"])


class TestRanking(unittest.TestCase):
    def _score(self, index: int, gain: float) -> eg_evaluate.AggregateScore:
        return eg_evaluate.aggregate_results(index, Configuration(), [_result("loop", gain, 12.0, raw_gain=12.0)])

    def test_near_truth_outranks_far_off(self) -> None:
        close = self._score(1, 12.0 * 1.02)
        far_high = self._score(0, 12.0 * 1.5)
        far_low = self._score(2, 12.0 * 0.5)
        ranked = eg_evaluate.rank_scores([far_high, close, far_low], by="combined")
        self.assertIs(ranked[0], close)
        ranked = eg_evaluate.rank_scores([far_high, close, far_low], by="error")
        self.assertIs(ranked[0], close)

    def test_ties_break_on_config_index(self) -> None:
        a = self._score(5, 12.0)
        b = self._score(2, 12.0)
        self.assertEqual([s.config_index for s in eg_evaluate.rank_scores([a, b])], [2, 5])

    def test_nan_sinks(self) -> None:
        empty = eg_evaluate.aggregate_results(0, Configuration(), [])
        good = self._score(1, 12.0)
        self.assertEqual([s.config_index for s in eg_evaluate.rank_scores([empty, good])], [1, 0])
        self.assertEqual([s.config_index for s in eg_evaluate.rank_scores([empty, good], by="error")], [1, 0])

    def test_unknown_scoring(self) -> None:
        with self.assertRaises(ValueError):
            eg_evaluate.rank_scores([], by="vibes")

    def test_directions_cover_every_function(self) -> None:
        self.assertEqual(set(eg_evaluate.SCORING_FUNCTIONS), set(eg_evaluate.SCORING_DIRECTIONS))
        self.assertEqual(eg_evaluate.SCORING_DIRECTIONS["error"], "lower")
        self.assertEqual(eg_evaluate.SCORING_DIRECTIONS["combined"], "higher")


class TestParetoAndOutliers(unittest.TestCase):
    def test_pareto_front(self) -> None:
        best = eg_evaluate.aggregate_results(0, Configuration(), [_result("t", 100.0, 100.0)])
        worse = eg_evaluate.aggregate_results(1, Configuration(), [_result("t", 120.0, 100.0, loss=90.0, raw_loss=100.0)])
        ratio_off = eg_evaluate.aggregate_results(2, Configuration(), [_result("t", 100.0, 100.0, loss=80.0, raw_loss=80.0)])
        acc_off = eg_evaluate.aggregate_results(3, Configuration(), [_result("t", 90.0, 100.0)])
        front = eg_evaluate.pareto_front([best, worse, ratio_off, acc_off])
        self.assertEqual([s.config_index for s in front], [0])
        front = eg_evaluate.pareto_front([ratio_off, acc_off, worse])
        self.assertEqual([s.config_index for s in front], [2, 3])

    def test_identify_outlier_tracks(self) -> None:
        results = []
        for cfg in range(4):
            for track in ("a", "b", "c", "d"):
                results.append(_result(track, 100.0 + cfg, 100.0))
            results.append(_result("broken", 160.0 + cfg, 100.0))
        profiles = eg_evaluate.identify_outlier_tracks(results)
        self.assertEqual(profiles[0].track, "broken")
        self.assertTrue(profiles[0].is_outlier)
        self.assertEqual(profiles[0].pct_within_80_120, 0.0)
        self.assertFalse(any(p.is_outlier for p in profiles[1:]))

    def test_identify_outlier_tracks_empty(self) -> None:
        self.assertEqual(eg_evaluate.identify_outlier_tracks([]), [])


if __name__ == "__main__":
    unittest.main()
