from __future__ import annotations

# Command-line front end: loads CSV traces and ground truth, runs evaluations
# or searches and logs the rankings.

import csv
import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np
import typer

from eg_config import (
    ConfigSpace,
    Configuration,
    deadzone_space,
    get_preset,
    interval_scan_space,
    load_configuration,
    load_parameter_space,
    optimizer_space,
    preset_space,
)
from eg_evaluate import (
    SCORING_FUNCTIONS,
    AggregateScore,
    Track,
    evaluate,
    identify_outlier_tracks,
    lookup_ground_truth,
    normalize_ground_truth,
    pareto_front,
)
from eg_search import SearchOutcome, _StageProfiler, refine_search, run_search
from eg_signal import Trace


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    logging.getLogger("numba").setLevel(logging.WARNING)


# -----------------
# Input adapters
# -----------------

def _parse_float(cell: str) -> Optional[float]:
    try:
        return float(cell)
    except (TypeError, ValueError):
        return None


def read_trace_csv(path: str) -> Track:
    """Read ``distance_m,elevation_m`` rows; a header row and blank lines are skipped."""
    distances: List[float] = []
    elevations: List[float] = []
    with open(path, "r", newline="") as f:
        for lineno, row in enumerate(csv.reader(f), start=1):
            if len(row) < 2:
                continue
            d = _parse_float(row[0])
            e = _parse_float(row[1])
            if d is None or e is None:
                if lineno == 1:
                    continue
                raise ValueError(f"{path}:{lineno}: expected numeric distance,elevation")
            distances.append(d)
            elevations.append(e)
    if not distances:
        raise ValueError(f"{path}: no samples")
    return Track(Path(path).name, Trace(np.asarray(distances), np.asarray(elevations)))


def read_ground_truth_csv(path: str) -> Dict[str, float]:
    """Read ``filename,official_gain_m`` rows into a lower-cased lookup."""
    records: Dict[str, float] = {}
    with open(path, "r", newline="") as f:
        for row in csv.reader(f):
            if len(row) < 2:
                continue
            gain = _parse_float(row[1])
            if gain is None:
                continue
            records[row[0]] = gain
    return normalize_ground_truth(records)


def _load_tracks(paths: Sequence[str]) -> List[Track]:
    tracks: List[Track] = []
    for path in paths:
        try:
            tracks.append(read_trace_csv(path))
        except (OSError, ValueError) as exc:
            logging.warning("Skipping %s: %s", path, exc)
    logging.info("Loaded %d/%d track(s)", len(tracks), len(paths))
    return tracks


def _base_config(preset: str, config_path: Optional[str], engine: str) -> Configuration:
    base = get_preset(preset)
    if config_path:
        base = load_configuration(config_path, base=base)
    if engine != base.engine:
        base = replace(base, engine=engine)
    return base


# -----------------
# Reporting
# -----------------

def _fmt(value: Optional[float], spec: str = ".2f") -> str:
    if value is None or not np.isfinite(value):
        return "--"
    return format(value, spec)


def _log_rankings(outcome: SearchOutcome, top_k: int) -> None:
    logging.info(
        "Ranked %d/%d configuration(s) by %s%s",
        outcome.evaluated_configs,
        outcome.total_configs,
        outcome.scoring,
        " (interrupted)" if outcome.interrupted else "",
    )
    for rank, score in enumerate(outcome.rankings[: max(0, top_k)], start=1):
        _log_score(rank, score)


def _log_score(rank: int, score: AggregateScore) -> None:
    logging.info(
        "#%d cfg %d | combined %s | error %s | median acc %s%% | 90-110%% %d/%d | ratio %s%% | %s",
        rank,
        score.config_index,
        _fmt(score.combined_score),
        _fmt(score.error_score),
        _fmt(score.median_accuracy),
        score.band_counts[2],
        score.n_scored,
        _fmt(score.median_ratio, ".1f"),
        score.config.describe(),
    )


def _log_extras(outcome: SearchOutcome, pareto: bool, outliers: bool) -> None:
    if pareto:
        front = pareto_front(outcome.rankings)
        logging.info("Pareto front: %d configuration(s)", len(front))
        for score in front:
            _log_score(0, score)
    if outliers:
        profiles = [p for p in identify_outlier_tracks(outcome.results) if p.is_outlier]
        logging.info("Outlier tracks: %d", len(profiles))
        for p in profiles:
            logging.info(
                "  %s score %.1f | avg %.1f%% | median %.1f%% | worst %.1f%% | within 80-120%%: %.0f%%",
                p.track,
                p.outlier_score,
                p.avg_accuracy,
                p.median_accuracy,
                p.worst_accuracy,
                p.pct_within_80_120,
            )


@contextmanager
def _interruptible() -> Iterator[threading.Event]:
    """Ctrl-C sets the yielded event; the previous SIGINT handler comes back on exit."""
    stop = threading.Event()

    def _handler(signum, frame) -> None:  # pragma: no cover - signal driven
        logging.warning("Interrupt received; finishing in-flight evaluations")
        stop.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield stop
    finally:
        signal.signal(signal.SIGINT, previous)


# -----------------
# Commands
# -----------------

def _run_evaluate(
    trace_files: List[str],
    ground_truth_path: Optional[str],
    preset: str,
    config_path: Optional[str],
    engine: str,
    verbose: bool,
    log_file: Optional[str],
) -> int:
    _setup_logging(verbose, log_file)
    try:
        config = _base_config(preset, config_path, engine)
        truth = read_ground_truth_csv(ground_truth_path) if ground_truth_path else {}
    except (OSError, ValueError) as exc:
        logging.error("%s", exc)
        return 2
    tracks = _load_tracks(trace_files)
    if not tracks:
        logging.error("No readable tracks")
        return 2
    logging.info("Configuration: %s", config.describe())
    for track in tracks:
        r = evaluate(config, track, lookup_ground_truth(truth, track.name))
        if r.status == "error":
            logging.error("%s: %s", track.name, r.error)
            continue
        logging.info(
            "%s | %s | gain %.1f m (raw %.1f) | loss %.1f m (raw %.1f) | ratio %.1f%% | accuracy %s%% | %s",
            track.name,
            r.terrain,
            r.gain,
            r.raw_gain,
            r.loss,
            r.raw_loss,
            r.ratio,
            _fmt(r.accuracy, ".1f"),
            r.status,
        )
    return 0


def _run_search(
    space_builder,
    trace_files: List[str],
    ground_truth_path: Optional[str],
    workers: int,
    scoring: str,
    top_k: int,
    chunk_size: int,
    pareto: bool,
    outliers: bool,
    verbose: bool,
    log_file: Optional[str],
    profile: bool,
) -> int:
    _setup_logging(verbose, log_file)
    profiler = _StageProfiler(profile)
    if scoring not in SCORING_FUNCTIONS:
        logging.error("Unknown scoring '%s' (choose from %s)", scoring, ", ".join(sorted(SCORING_FUNCTIONS)))
        return 2
    try:
        space: ConfigSpace = space_builder()
        truth = read_ground_truth_csv(ground_truth_path) if ground_truth_path else {}
    except (OSError, ValueError) as exc:
        logging.error("%s", exc)
        return 2
    tracks = _load_tracks(trace_files)
    if not tracks:
        logging.error("No readable tracks")
        return 2
    profiler.lap("load")
    with _interruptible() as stop:
        outcome = run_search(
            space,
            tracks,
            truth,
            workers=workers,
            scoring=scoring,
            chunk_size=chunk_size,
            stop_event=stop,
            keep_results=outliers,
            profile=profile,
        )
    profiler.lap("search")
    _log_rankings(outcome, top_k)
    _log_extras(outcome, pareto, outliers)
    return 130 if outcome.interrupted else 0


# Typer parameter infos are built per command so no two signatures share one.
def _traces_arg():
    return typer.Argument(..., help="One or more distance,elevation CSV files")


def _truth_opt():
    return typer.Option(None, "--ground-truth", "-g", help="CSV of filename,official_gain_m")


def _workers_opt():
    return typer.Option(0, "--workers", "-j", help="Worker threads (0=auto)")


def _scoring_opt():
    return typer.Option("combined", "--scoring", help="combined|weighted_accuracy|balance|preservation|success_rate|error")


def _top_opt():
    return typer.Option(10, "--top", help="How many ranked configurations to log")


def _chunk_opt():
    return typer.Option(64, "--chunk-size", help="Configurations evaluated per batch")


def _pareto_opt():
    return typer.Option(False, "--pareto/--no-pareto", help="Log the Pareto-optimal configurations")


def _outliers_opt():
    return typer.Option(False, "--outliers/--no-outliers", help="Log tracks that are inaccurate under most configurations")


def _verbose_opt():
    return typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _log_file_opt():
    return typer.Option(None, "--log-file", help="Optional log file path for diagnostics")


def _profile_opt():
    return typer.Option(False, "--profile", help="Log stage timings")


def _engine_opt():
    return typer.Option("auto", "--engine", help="Accumulation loop engine: auto|python|numba")


def _build_typer_app():
    app = typer.Typer(add_completion=False, help="Elevation gain/loss from GPS traces and parameter search.")

    @app.command(name="evaluate")
    def evaluate_cmd(
        trace_files: List[str] = _traces_arg(),
        ground_truth: Optional[str] = _truth_opt(),
        preset: str = typer.Option("default", "--preset", "-p", help="Configuration preset"),
        config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON file of configuration overrides"),
        engine: str = _engine_opt(),
        verbose: bool = _verbose_opt(),
        log_file: Optional[str] = _log_file_opt(),
    ) -> None:
        """Run one configuration over each track and log gain, loss and accuracy."""
        code = _run_evaluate(trace_files, ground_truth, preset, config, engine, verbose, log_file)
        if code != 0:
            raise typer.Exit(code)

    @app.command(name="scan")
    def scan_cmd(
        trace_files: List[str] = _traces_arg(),
        ground_truth: Optional[str] = _truth_opt(),
        start: float = typer.Option(0.1, "--start", help="First cutoff interval (m)"),
        stop: float = typer.Option(7.0, "--stop", help="Last cutoff interval (m)"),
        step: float = typer.Option(0.025, "--step", help="Interval step (m)"),
        preset: str = typer.Option("butterworth", "--preset", "-p", help="Configuration preset to scan from"),
        workers: int = _workers_opt(),
        scoring: str = _scoring_opt(),
        top: int = _top_opt(),
        chunk_size: int = _chunk_opt(),
        pareto: bool = _pareto_opt(),
        outliers: bool = _outliers_opt(),
        engine: str = _engine_opt(),
        verbose: bool = _verbose_opt(),
        log_file: Optional[str] = _log_file_opt(),
        profile: bool = _profile_opt(),
    ) -> None:
        """Scan the low-pass cutoff interval over a fixed step range."""

        def build() -> ConfigSpace:
            return interval_scan_space(_base_config(preset, None, engine), start, stop, step)

        code = _run_search(build, trace_files, ground_truth, workers, scoring, top, chunk_size, pareto, outliers, verbose, log_file, profile)
        if code != 0:
            raise typer.Exit(code)

    @app.command(name="grid")
    def grid_cmd(
        trace_files: List[str] = _traces_arg(),
        ground_truth: Optional[str] = _truth_opt(),
        space: str = typer.Option("deadzone", "--space", "-s", help="deadzone|optimizer|presets or a JSON space file"),
        workers: int = _workers_opt(),
        scoring: str = _scoring_opt(),
        top: int = _top_opt(),
        chunk_size: int = _chunk_opt(),
        pareto: bool = _pareto_opt(),
        outliers: bool = _outliers_opt(),
        verbose: bool = _verbose_opt(),
        log_file: Optional[str] = _log_file_opt(),
        profile: bool = _profile_opt(),
    ) -> None:
        """Evaluate a Cartesian grid of configurations."""

        def build() -> ConfigSpace:
            builtin = {"deadzone": deadzone_space, "optimizer": optimizer_space, "presets": preset_space}
            if space in builtin:
                return builtin[space]()
            return load_parameter_space(space)

        code = _run_search(build, trace_files, ground_truth, workers, scoring, top, chunk_size, pareto, outliers, verbose, log_file, profile)
        if code != 0:
            raise typer.Exit(code)

    @app.command(name="refine")
    def refine_cmd(
        trace_files: List[str] = _traces_arg(),
        ground_truth: Optional[str] = _truth_opt(),
        name: str = typer.Option("cutoff_interval_m", "--name", help="Numeric configuration field to refine"),
        start: float = typer.Option(0.5, "--start", help="Coarse scan start"),
        stop: float = typer.Option(7.0, "--stop", help="Coarse scan stop"),
        step: float = typer.Option(0.5, "--step", help="Coarse scan step"),
        rounds: int = typer.Option(3, "--rounds", help="Refinement rounds"),
        shrink: float = typer.Option(5.0, "--shrink", help="Step divisor per round"),
        preset: str = typer.Option("butterworth", "--preset", "-p", help="Configuration preset to refine from"),
        workers: int = _workers_opt(),
        scoring: str = _scoring_opt(),
        top: int = _top_opt(),
        verbose: bool = _verbose_opt(),
        log_file: Optional[str] = _log_file_opt(),
    ) -> None:
        """Coarse-to-fine scan of one numeric field."""
        _setup_logging(verbose, log_file)
        try:
            base = get_preset(preset)
            truth = read_ground_truth_csv(ground_truth) if ground_truth else {}
            tracks = _load_tracks(trace_files)
            if not tracks:
                raise ValueError("No readable tracks")
            with _interruptible() as stop_event:
                outcome = refine_search(
                    base, name, start, stop, step, tracks, truth,
                    rounds=rounds, shrink=shrink, workers=workers, scoring=scoring, stop_event=stop_event,
                )
        except (OSError, ValueError) as exc:
            logging.error("%s", exc)
            raise typer.Exit(2)
        for result in outcome.rounds:
            _log_rankings(result, top)
        if any(result.interrupted for result in outcome.rounds):
            raise typer.Exit(130)
        if outcome.best is None:
            raise typer.Exit(1)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":
    raise SystemExit(main_cli())
