from __future__ import annotations

import json
import os
import tempfile
import unittest
from unittest import mock

import numpy as np
from typer.testing import CliRunner

import eg_cli


class TestCsvReaders(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def _write(self, name: str, text: str) -> str:
        path = os.path.join(self.tmp.name, name)
        with open(path, "w") as f:
            f.write(text)
        return path

    def test_trace_with_header(self) -> None:
        path = self._write("Ridge.csv", "distance_m,elevation_m\n0,100\n10,102\n\n20,105\n")
        track = eg_cli.read_trace_csv(path)
        self.assertEqual(track.name, "Ridge.csv")
        np.testing.assert_array_equal(track.trace.elevations, [100.0, 102.0, 105.0])

    def test_trace_rejects_bad_row(self) -> None:
        path = self._write("bad.csv", "0,100\nten,102\n")
        with self.assertRaises(ValueError):
            eg_cli.read_trace_csv(path)

    def test_ground_truth(self) -> None:
        path = self._write("truth.csv", "filename,official_gain_m\nRidge.CSV,120\nflat.csv,0\n")
        truth = eg_cli.read_ground_truth_csv(path)
        self.assertEqual(truth, {"ridge.csv": 120.0, "flat.csv": 0.0})


class TestCommands(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        d = np.arange(0.0, 400.0, 2.0)
        e = 100.0 + 8.0 * np.sin(d / 30.0)
        self.trace_path = os.path.join(self.tmp.name, "wave.csv")
        with open(self.trace_path, "w") as f:
            f.write("distance_m,elevation_m\n")
            for di, ei in zip(d, e):
                f.write(f"{di},{ei}\n")
        self.truth_path = os.path.join(self.tmp.name, "truth.csv")
        with open(self.truth_path, "w") as f:
            f.write("wave.csv,50\n")
        self.runner = CliRunner()
        self.app = eg_cli._build_typer_app()

    def test_evaluate(self) -> None:
        result = self.runner.invoke(self.app, ["evaluate", self.trace_path, "--ground-truth", self.truth_path])
        self.assertEqual(result.exit_code, 0, result.output)

    def test_grid_presets(self) -> None:
        result = self.runner.invoke(
            self.app,
            ["grid", self.trace_path, "-g", self.truth_path, "--space", "presets", "--workers", "2", "--top", "3"],
        )
        self.assertEqual(result.exit_code, 0, result.output)

    def test_grid_with_invalid_space_value_fails_before_searching(self) -> None:
        space_path = os.path.join(self.tmp.name, "space.json")
        with open(space_path, "w") as f:
            json.dump({"grid": {"smoother": ["none", "kalman"]}}, f)
        with mock.patch.object(eg_cli, "run_search") as search:
            result = self.runner.invoke(self.app, ["grid", self.trace_path, "--space", space_path])
        self.assertEqual(result.exit_code, 2)
        search.assert_not_called()

    def test_unknown_preset_fails(self) -> None:
        result = self.runner.invoke(self.app, ["evaluate", self.trace_path, "--preset", "extreme"])
        self.assertEqual(result.exit_code, 2)


if __name__ == "__main__":
    unittest.main()
