from __future__ import annotations

# Per-track evaluation of a Configuration and per-Configuration aggregation,
# scoring and ranking.

import logging
import math
from dataclasses import asdict, dataclass, field
from operator import attrgetter
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from eg_config import Configuration
from eg_signal import (
    PipelineError,
    TerrainClass,
    Trace,
    adaptive_epsilon,
    classify_terrain,
    correct_outliers,
    deadzone_gain_loss,
    gain_loss_ratio,
    get_smoother,
    naive_gain_loss,
    post_process_gradients,
    reject_spikes,
    resample_uniform,
    step_deadzone_gain_loss,
)


# -----------------
# Data structures
# -----------------

ResultStatus = Literal["ok", "resample_limit", "error"]

# Inclusive accuracy bands, tightest first.
ACCURACY_BANDS: Tuple[Tuple[float, float], ...] = (
    (98.0, 102.0),
    (95.0, 105.0),
    (90.0, 110.0),
    (85.0, 115.0),
    (80.0, 120.0),
)
BAND_WEIGHTS = (10.0, 6.0, 3.0, 1.5, 1.0)
OUTSIDE_PENALTY = 5.0
BALANCE_BANDS: Tuple[Tuple[float, float], ...] = ((85.0, 115.0), (70.0, 130.0))


@dataclass(frozen=True)
class Track:
    name: str
    trace: Trace


@dataclass(frozen=True)
class PipelineOutput:
    trace: Trace
    gain: float
    loss: float
    terrain: TerrainClass
    limited: bool = False
    outlier_count: int = 0
    spike_count: int = 0
    window_used: Optional[int] = None
    cutoff_used: Optional[float] = None
    epsilon_used: Optional[float] = None


@dataclass(frozen=True)
class EvaluationResult:
    track: str
    config_index: int
    status: ResultStatus
    error: Optional[str] = None
    official_gain: Optional[float] = None
    raw_gain: float = 0.0
    raw_loss: float = 0.0
    gain: float = 0.0
    loss: float = 0.0
    ratio: float = 100.0
    accuracy: Optional[float] = None
    terrain: Optional[TerrainClass] = None
    samples: int = 0
    outlier_count: int = 0
    spike_count: int = 0
    window_used: Optional[int] = None
    cutoff_used: Optional[float] = None
    epsilon_used: Optional[float] = None

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AggregateScore:
    config_index: int
    config: Configuration
    n_tracks: int
    n_scored: int
    n_failed: int
    n_limited: int
    band_counts: Tuple[int, ...]
    outside_count: int
    balance_counts: Tuple[int, ...]
    mean_accuracy: float
    median_accuracy: float
    best_accuracy: float
    worst_accuracy: float
    std_accuracy: float
    success_rate: float
    mean_ratio: float
    median_ratio: float
    avg_raw_gain: float
    avg_raw_loss: float
    avg_gain: float
    avg_loss: float
    gain_reduction_pct: float
    loss_reduction_pct: float
    weighted_accuracy_score: float
    balance_score: float
    preservation_score: float
    combined_score: float
    error_score: float
    terrain_scores: Dict[str, float] = field(default_factory=dict)
    avg_cutoff: Optional[float] = None
    avg_epsilon: Optional[float] = None

    def as_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {"config_index": self.config_index, "config": self.config.describe()}
        for name in (
            "n_tracks", "n_scored", "n_failed", "n_limited", "outside_count",
            "mean_accuracy", "median_accuracy", "best_accuracy", "worst_accuracy", "std_accuracy",
            "success_rate", "mean_ratio", "median_ratio", "gain_reduction_pct", "loss_reduction_pct",
            "weighted_accuracy_score", "balance_score", "preservation_score", "combined_score",
            "error_score", "avg_cutoff", "avg_epsilon",
        ):
            row[name] = getattr(self, name)
        for (lo, hi), count in zip(ACCURACY_BANDS, self.band_counts):
            row[f"within_{lo:g}_{hi:g}"] = count
        for (lo, hi), count in zip(BALANCE_BANDS, self.balance_counts):
            row[f"ratio_{lo:g}_{hi:g}"] = count
        for terrain, score in self.terrain_scores.items():
            row[f"terrain_{terrain}"] = score
        return row


# -----------------
# Pipeline
# -----------------

def run_pipeline(trace: Trace, config: Configuration) -> PipelineOutput:
    """Resample, correct outliers, smooth, post-process and accumulate one trace."""
    terrain = classify_terrain(trace)
    resampled = resample_uniform(trace, config.effective_spacing())
    current: Trace = resampled

    outliers = 0
    if config.enable_outlier_correction:
        current, outliers = correct_outliers(current, config.outlier_k)

    smoothed, info = get_smoother(config.smoother)(current, config)
    if config.enable_blending or config.enable_capping:
        smoothed = post_process_gradients(
            smoothed,
            current,
            enable_blending=config.enable_blending,
            blend_factor=config.blend_factor,
            enable_capping=config.enable_capping,
            gradient_min=config.gradient_min,
            gradient_max=config.gradient_max,
        )

    elevations = smoothed.elevations
    spikes = 0
    if config.enable_spike_rejection:
        elevations, spikes = reject_spikes(elevations, config.spike_threshold_for(terrain), config.engine)
    if not np.all(np.isfinite(elevations)):
        raise PipelineError("Non-finite elevations after smoothing")
    final = smoothed.with_elevations(elevations)

    epsilon: Optional[float] = None
    if config.deadzone_mode == "naive":
        gain, loss = naive_gain_loss(elevations)
    elif config.deadzone_mode == "directional":
        gain, loss = deadzone_gain_loss(elevations, config.gain_threshold_m, config.loss_threshold_m, config.engine)
    else:
        epsilon = adaptive_epsilon(elevations, config.cutoff_interval_m)
        gain, loss = step_deadzone_gain_loss(elevations, epsilon)

    window = int(info["window"]) if "window" in info else None
    return PipelineOutput(
        trace=final,
        gain=gain,
        loss=loss,
        terrain=terrain,
        limited=resampled.limited,
        outlier_count=outliers,
        spike_count=spikes,
        window_used=window,
        cutoff_used=info.get("cutoff_hz"),
        epsilon_used=epsilon,
    )


def lookup_ground_truth(ground_truth: Mapping[str, float], name: str) -> Optional[float]:
    """Case-insensitive lookup on the file name; 0 or missing means unknown."""
    key = name.strip().lower()
    value = ground_truth.get(key)
    if value is None:
        base = key.replace("\\", "/").rsplit("/", 1)[-1]
        value = ground_truth.get(base)
    if value is None or value <= 0:
        return None
    return float(value)


def normalize_ground_truth(records: Mapping[str, float]) -> Dict[str, float]:
    return {str(k).strip().lower(): float(v) for k, v in records.items()}


def evaluate(
    config: Configuration,
    track: Track,
    official_gain: Optional[float] = None,
    config_index: int = 0,
) -> EvaluationResult:
    """Run the pipeline for one (Configuration, Track) pair; failures come back as ``status="error"``."""
    official = official_gain if official_gain and official_gain > 0 else None
    try:
        raw_gain, raw_loss = naive_gain_loss(track.trace.elevations)
        out = run_pipeline(track.trace, config)
    except Exception as exc:
        logging.warning("Evaluation failed for %s (config #%d): %s", track.name, config_index, exc)
        return EvaluationResult(
            track=track.name,
            config_index=config_index,
            status="error",
            error=f"{type(exc).__name__}: {exc}",
            official_gain=official,
        )
    accuracy = out.gain / official * 100.0 if official else None
    return EvaluationResult(
        track=track.name,
        config_index=config_index,
        status="resample_limit" if out.limited else "ok",
        official_gain=official,
        raw_gain=raw_gain,
        raw_loss=raw_loss,
        gain=out.gain,
        loss=out.loss,
        ratio=gain_loss_ratio(out.gain, out.loss),
        accuracy=accuracy,
        terrain=out.terrain,
        samples=len(out.trace),
        outlier_count=out.outlier_count,
        spike_count=out.spike_count,
        window_used=out.window_used,
        cutoff_used=out.cutoff_used,
        epsilon_used=out.epsilon_used,
    )


# -----------------
# Aggregation & scoring
# -----------------

def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else math.nan


def _median(values: Sequence[float]) -> float:
    return float(np.median(values)) if len(values) else math.nan


def _count_within(values: Sequence[float], lo: float, hi: float) -> int:
    return sum(1 for v in values if lo <= v <= hi)


def weighted_accuracy_score(band_counts: Sequence[int], outside: int) -> float:
    """Band coverage with tighter bands weighted more, minus a penalty per track outside 80-120%. Higher is better."""
    score = 0.0
    previous = 0
    for weight, count in zip(BAND_WEIGHTS, band_counts):
        score += weight * (count - previous)
        previous = count
    return score - OUTSIDE_PENALTY * outside


def gain_loss_balance_score(balance_counts: Sequence[int], median_ratio: float) -> float:
    """Higher is better; rewards loss/gain ratios near 100%."""
    tight, loose = balance_counts
    return 10.0 * tight + 5.0 * (loose - tight) - 2.0 * abs(median_ratio - 100.0)


def loss_preservation_score(gain_reduction_pct: float, loss_reduction_pct: float) -> float:
    """100 when gain and loss shrink by the same share of the raw figures. Higher is better."""
    return 100.0 - abs(loss_reduction_pct - gain_reduction_pct)


def combined_score(weighted: float, balance: float, preservation: float) -> float:
    return 0.4 * weighted + 0.4 * balance + 0.2 * preservation


def error_score(accuracies: Sequence[float]) -> float:
    """Mean/max error plus penalties for tracks beyond 5% and 2%. Lower is better."""
    if not accuracies:
        return math.nan
    errors = [abs(a - 100.0) for a in accuracies]
    beyond5 = sum(1 for e in errors if e > 5.0)
    beyond2 = sum(1 for e in errors if e > 2.0)
    return 0.4 * (sum(errors) / len(errors)) + 0.25 * max(errors) + 3.0 * beyond5 + 1.0 * beyond2


def terrain_scores(results: Iterable[EvaluationResult]) -> Dict[str, float]:
    """Mean of ``10 - |acc - 100|`` (0 outside 90-110%) per terrain group; rolling counts as flat."""
    groups: Dict[str, List[float]] = {"flat": [], "hilly": [], "mountainous": []}
    for r in results:
        if r.accuracy is None or r.terrain is None:
            continue
        score = 10.0 - abs(r.accuracy - 100.0) if 90.0 <= r.accuracy <= 110.0 else 0.0
        groups["flat" if r.terrain == "rolling" else r.terrain].append(score)
    return {name: (sum(v) / len(v) if v else 0.0) for name, v in groups.items()}


def _reduction_pct(raw: float, processed: float) -> float:
    if raw > 0.0:
        return (raw - processed) / raw * 100.0
    return 0.0


def aggregate_results(config_index: int, config: Configuration, results: Sequence[EvaluationResult]) -> AggregateScore:
    usable = [r for r in results if r.status != "error"]
    accuracies = [r.accuracy for r in usable if r.accuracy is not None]
    ratios = [r.ratio for r in usable]

    band_counts = tuple(_count_within(accuracies, lo, hi) for lo, hi in ACCURACY_BANDS)
    outside = len(accuracies) - band_counts[-1]
    balance_counts = tuple(_count_within(ratios, lo, hi) for lo, hi in BALANCE_BANDS)

    avg_raw_gain = _mean([r.raw_gain for r in usable])
    avg_raw_loss = _mean([r.raw_loss for r in usable])
    avg_gain = _mean([r.gain for r in usable])
    avg_loss = _mean([r.loss for r in usable])
    gain_red = _reduction_pct(avg_raw_gain, avg_gain) if usable else math.nan
    loss_red = _reduction_pct(avg_raw_loss, avg_loss) if usable else math.nan

    median_ratio = _median(ratios)
    weighted = weighted_accuracy_score(band_counts, outside)
    balance = gain_loss_balance_score(balance_counts, median_ratio)
    preservation = loss_preservation_score(gain_red, loss_red)

    if accuracies:
        best = min(accuracies, key=lambda a: abs(a - 100.0))
        worst = max(accuracies, key=lambda a: abs(a - 100.0))
        std = float(np.std(accuracies))
        success = band_counts[2] / len(accuracies) * 100.0
    else:
        best = worst = std = success = math.nan

    cutoffs = [r.cutoff_used for r in usable if r.cutoff_used is not None]
    epsilons = [r.epsilon_used for r in usable if r.epsilon_used is not None]

    return AggregateScore(
        config_index=config_index,
        config=config,
        n_tracks=len(results),
        n_scored=len(accuracies),
        n_failed=len(results) - len(usable),
        n_limited=sum(1 for r in usable if r.status == "resample_limit"),
        band_counts=band_counts,
        outside_count=outside,
        balance_counts=balance_counts,
        mean_accuracy=_mean(accuracies),
        median_accuracy=_median(accuracies),
        best_accuracy=best,
        worst_accuracy=worst,
        std_accuracy=std,
        success_rate=success,
        mean_ratio=_mean(ratios),
        median_ratio=median_ratio,
        avg_raw_gain=avg_raw_gain,
        avg_raw_loss=avg_raw_loss,
        avg_gain=avg_gain,
        avg_loss=avg_loss,
        gain_reduction_pct=gain_red,
        loss_reduction_pct=loss_red,
        weighted_accuracy_score=weighted,
        balance_score=balance,
        preservation_score=preservation,
        combined_score=combined_score(weighted, balance, preservation),
        error_score=error_score(accuracies),
        terrain_scores=terrain_scores(usable),
        avg_cutoff=_mean(cutoffs) if cutoffs else None,
        avg_epsilon=_mean(epsilons) if epsilons else None,
    )


ScoreDirection = Literal["higher", "lower"]

SCORING_FUNCTIONS: Dict[str, Callable[[AggregateScore], float]] = {
    "combined": attrgetter("combined_score"),
    "weighted_accuracy": attrgetter("weighted_accuracy_score"),
    "balance": attrgetter("balance_score"),
    "preservation": attrgetter("preservation_score"),
    "success_rate": attrgetter("success_rate"),
    "error": attrgetter("error_score"),
}
SCORING_DIRECTIONS: Dict[str, ScoreDirection] = {
    "combined": "higher",
    "weighted_accuracy": "higher",
    "balance": "higher",
    "preservation": "higher",
    "success_rate": "higher",
    "error": "lower",
}


def rank_scores(scores: Iterable[AggregateScore], by: str = "combined") -> List[AggregateScore]:
    """Best first by one scoring function; NaN scores sink, config index breaks ties."""
    if by not in SCORING_FUNCTIONS:
        raise ValueError(f"Unknown scoring function '{by}' (expected one of {sorted(SCORING_FUNCTIONS)})")
    getter = SCORING_FUNCTIONS[by]
    sign = -1.0 if SCORING_DIRECTIONS[by] == "higher" else 1.0

    def key(s: AggregateScore) -> Tuple[int, float, int]:
        value = float(getter(s))
        if math.isnan(value):
            return (1, 0.0, s.config_index)
        return (0, sign * value, s.config_index)

    return sorted(scores, key=key)


def pareto_front(scores: Sequence[AggregateScore]) -> List[AggregateScore]:
    """Configurations not dominated on median accuracy closeness, median ratio closeness and loss reduction."""

    def objectives(s: AggregateScore) -> Tuple[float, float, float]:
        return (abs(s.median_accuracy - 100.0), abs(s.median_ratio - 100.0), s.loss_reduction_pct)

    candidates = [s for s in scores if not any(math.isnan(v) for v in objectives(s))]
    front = []
    for cand in candidates:
        c = objectives(cand)
        dominated = False
        for other in candidates:
            o = objectives(other)
            if all(ov <= cv for ov, cv in zip(o, c)) and any(ov < cv for ov, cv in zip(o, c)):
                dominated = True
                break
        if not dominated:
            front.append(cand)
    return sorted(front, key=attrgetter("config_index"))


@dataclass(frozen=True)
class TrackProfile:
    track: str
    n_configs: int
    avg_accuracy: float
    median_accuracy: float
    worst_accuracy: float
    pct_within_80_120: float
    outlier_score: float
    is_outlier: bool = False


def identify_outlier_tracks(results: Iterable[EvaluationResult]) -> List[TrackProfile]:
    """Profile each track's accuracy across configurations and flag tracks that are off everywhere.

    Returned profiles are sorted by outlier score, highest first.
    """
    by_track: Dict[str, List[float]] = {}
    for r in results:
        if r.accuracy is not None and r.status != "error":
            by_track.setdefault(r.track, []).append(r.accuracy)
    profiles: List[TrackProfile] = []
    for name, accs in by_track.items():
        avg = sum(accs) / len(accs)
        med = _median(accs)
        worst = max(accs, key=lambda a: abs(a - 100.0))
        within = _count_within(accs, 80.0, 120.0) / len(accs) * 100.0
        score = (
            0.3 * abs(avg - 100.0)
            + 0.3 * abs(med - 100.0)
            + 0.2 * abs(worst - 100.0)
            + 0.2 * (100.0 - within)
        )
        profiles.append(TrackProfile(name, len(accs), avg, med, worst, within, score))
    if not profiles:
        return []

    ordered = sorted(p.outlier_score for p in profiles)
    q1 = ordered[len(ordered) // 4]
    q3 = ordered[(len(ordered) * 3) // 4]
    threshold = max(q3 + 1.5 * (q3 - q1), 25.0)
    flagged = [
        TrackProfile(
            p.track,
            p.n_configs,
            p.avg_accuracy,
            p.median_accuracy,
            p.worst_accuracy,
            p.pct_within_80_120,
            p.outlier_score,
            is_outlier=(
                p.outlier_score > threshold
                or p.pct_within_80_120 < 50.0
                or abs(p.worst_accuracy - 100.0) > 50.0
            ),
        )
        for p in profiles
    ]
    return sorted(flagged, key=lambda p: (-p.outlier_score, p.track))
