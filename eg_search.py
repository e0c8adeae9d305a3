from __future__ import annotations

# Parallel parameter search: fans (Configuration, Track) evaluations out over a
# thread pool, aggregates per Configuration and ranks the results.

import itertools
import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from eg_config import PARAM_BOUNDS, ConfigSpace, Configuration, ScanSpace
from eg_evaluate import (
    SCORING_DIRECTIONS,
    SCORING_FUNCTIONS,
    AggregateScore,
    EvaluationResult,
    Track,
    aggregate_results,
    evaluate,
    lookup_ground_truth,
    normalize_ground_truth,
    rank_scores,
)


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


def _fmt_time_hms(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0:
        return "--:--"
    sec_int = int(round(seconds))
    h, rem = divmod(sec_int, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h:d}:{m:02d}:{s:02d}"
    return f"{m:d}:{s:02d}"


class ProgressCounter:
    """Thread-safe completion counter that logs rate and ETA every ``every`` items."""

    def __init__(self, total: int, every: int = 2000, label: str = "evaluations") -> None:
        self.total = int(total)
        self.every = int(every)
        self.label = label
        self._count = 0
        self._lock = threading.Lock()
        self._start = time.perf_counter()

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            count = self._count
        if self.every > 0 and count % self.every == 0:
            self._report(count)
        return count

    def _report(self, count: int) -> None:
        elapsed = time.perf_counter() - self._start
        rate = count / elapsed if elapsed > 0 else math.inf
        remaining = (self.total - count) / rate if rate > 0 and math.isfinite(rate) else math.nan
        pct = count / self.total * 100.0 if self.total else 100.0
        logging.info(
            "Progress: %d/%d %s (%.1f%%), %.0f/s, ETA %s",
            count,
            self.total,
            self.label,
            pct,
            rate,
            _fmt_time_hms(remaining),
        )


@dataclass
class SearchOutcome:
    rankings: List[AggregateScore]
    scoring: str
    total_configs: int
    interrupted: bool = False
    results: List[EvaluationResult] = field(default_factory=list)

    @property
    def best(self) -> Optional[AggregateScore]:
        return self.rankings[0] if self.rankings else None

    @property
    def evaluated_configs(self) -> int:
        return len(self.rankings)


def _resolve_workers(workers: int) -> int:
    if workers and workers > 0:
        return int(workers)
    return max(1, os.cpu_count() or 1)


def run_search(
    space: ConfigSpace,
    tracks: Sequence[Track],
    ground_truth: Optional[Mapping[str, float]] = None,
    *,
    workers: int = 0,
    scoring: str = "combined",
    chunk_size: int = 64,
    stop_event: Optional[threading.Event] = None,
    progress_every: int = 2000,
    keep_results: bool = False,
    profile: bool = False,
    progress: Optional[ProgressCounter] = None,
) -> SearchOutcome:
    """Evaluate every Configuration of ``space`` on every track and rank them.

    Configurations are drawn from the space ``chunk_size`` at a time; a chunk's
    evaluations all finish before its Configurations are aggregated. Setting
    ``stop_event`` stops the search between completed evaluations; only fully
    evaluated Configurations are ranked and the outcome is marked interrupted.
    Pass ``progress`` to observe completed evaluations from another thread;
    otherwise a counter reporting every ``progress_every`` items is created.
    """
    if scoring not in SCORING_FUNCTIONS:
        raise ValueError(f"Unknown scoring function '{scoring}' (expected one of {sorted(SCORING_FUNCTIONS)})")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    profiler = _StageProfiler(profile)
    tracks = list(tracks)
    if not tracks:
        logging.warning("Search started with an empty corpus; every score will be undefined")
    truth = normalize_ground_truth(ground_truth or {})
    officials = [lookup_ground_truth(truth, t.name) for t in tracks]
    known = sum(1 for o in officials if o is not None)
    total_configs = len(space)
    logging.info(
        "Searching %d configuration(s) x %d track(s) (%d with ground truth), scoring=%s",
        total_configs,
        len(tracks),
        known,
        scoring,
    )
    if progress is None:
        progress = ProgressCounter(total_configs * len(tracks), every=progress_every)
    max_workers = _resolve_workers(workers)

    scores: List[AggregateScore] = []
    kept: List[EvaluationResult] = []
    interrupted = False
    numbered = enumerate(space)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        while not interrupted:
            chunk: List[Tuple[int, Configuration]] = list(itertools.islice(numbered, chunk_size))
            if not chunk:
                break
            if stop_event is not None and stop_event.is_set():
                interrupted = True
                break
            per_config: Dict[int, List[Optional[EvaluationResult]]] = {idx: [None] * len(tracks) for idx, _ in chunk}
            future_map = {}
            for idx, config in chunk:
                for ti, track in enumerate(tracks):
                    future = executor.submit(evaluate, config, track, officials[ti], idx)
                    future_map[future] = (idx, ti)
            for future in as_completed(future_map):
                idx, ti = future_map[future]
                per_config[idx][ti] = future.result()
                progress.increment()
                if stop_event is not None and stop_event.is_set():
                    interrupted = True
                    for pending in future_map:
                        pending.cancel()
                    break
            for idx, config in chunk:
                results = per_config[idx]
                if any(r is None for r in results):
                    continue
                complete = [r for r in results if r is not None]
                scores.append(aggregate_results(idx, config, complete))
                if keep_results:
                    kept.extend(complete)
    profiler.lap("evaluate")

    if interrupted:
        logging.warning(
            "Search interrupted after %d/%d configuration(s)", len(scores), total_configs
        )
    rankings = rank_scores(scores, by=scoring)
    profiler.lap("rank")
    failed = sum(s.n_failed for s in scores)
    if failed:
        logging.warning("%d evaluation(s) failed; see earlier warnings", failed)
    return SearchOutcome(
        rankings=rankings,
        scoring=scoring,
        total_configs=total_configs,
        interrupted=interrupted,
        results=kept,
    )


@dataclass
class RefineOutcome:
    rounds: List[SearchOutcome]
    name: str
    best_value: Optional[float] = None
    best: Optional[AggregateScore] = None


def _improves(candidate: AggregateScore, incumbent: AggregateScore, scoring: str) -> bool:
    """Strictly better under ``scoring``; ties keep the incumbent."""
    getter = SCORING_FUNCTIONS[scoring]
    new = float(getter(candidate))
    old = float(getter(incumbent))
    if math.isnan(new):
        return False
    if math.isnan(old):
        return True
    if SCORING_DIRECTIONS[scoring] == "higher":
        return new > old
    return new < old


def refine_search(
    base: Configuration,
    name: str,
    start: float,
    stop: float,
    step: float,
    tracks: Sequence[Track],
    ground_truth: Optional[Mapping[str, float]] = None,
    *,
    rounds: int = 3,
    shrink: float = 5.0,
    **search_kwargs,
) -> RefineOutcome:
    """Coarse-to-fine scan of one numeric field.

    After each round the window narrows to one step either side of the best
    value and the step is divided by ``shrink``.
    """
    if rounds < 1:
        raise ValueError("rounds must be >= 1")
    if shrink <= 1.0:
        raise ValueError("shrink must be > 1")
    lo_bound, hi_bound = PARAM_BOUNDS.get(name, (-math.inf, math.inf))
    outcome = RefineOutcome(rounds=[], name=name)
    lo, hi, cur_step = float(start), float(stop), float(step)
    for round_no in range(1, rounds + 1):
        space = ScanSpace(base, name, lo, hi, cur_step)
        logging.info("Refine round %d: %s in [%.4f, %.4f] step %.5f (%d values)", round_no, name, lo, hi, cur_step, len(space))
        result = run_search(space, tracks, ground_truth, **search_kwargs)
        outcome.rounds.append(result)
        top = result.best
        if top is not None:
            scoring = result.scoring
            if outcome.best is None or _improves(top, outcome.best, scoring):
                outcome.best = top
                outcome.best_value = float(getattr(top.config, name))
        if result.interrupted or outcome.best_value is None:
            break
        centre = outcome.best_value
        lo = max(centre - cur_step, lo_bound)
        hi = min(centre + cur_step, hi_bound)
        cur_step /= shrink
    if outcome.best_value is not None:
        logging.info("Refine best %s=%.5f", name, outcome.best_value)
    return outcome
