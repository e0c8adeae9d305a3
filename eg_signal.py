from __future__ import annotations

# Signal conditioning for distance/elevation traces: uniform resampling,
# MAD outlier correction, smoothing strategies, gradient post-processing and
# gain/loss accumulation. Configuration-aware wiring lives in eg_evaluate.

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Literal, Optional, Tuple

import numpy as np
from numba import njit
from scipy import signal

if TYPE_CHECKING:  # pragma: no cover
    from eg_config import Configuration


# -----------------
# Data structures
# -----------------

DIST_EPS = 1e-10
SPACING_EPS = 1e-10
MAD_FLOOR = 1e-6
MAX_RESAMPLE_POINTS = 100_000

GAUSSIAN_MIN_SAMPLES = 5
LOWPASS_MIN_SAMPLES = 10
LOWPASS_MIN_FRACTION = 0.01
LOWPASS_MAX_FRACTION = 0.45

TerrainClass = Literal["flat", "rolling", "hilly", "mountainous"]
TERRAIN_CLASSES: Tuple[TerrainClass, ...] = ("flat", "rolling", "hilly", "mountainous")
# Raw gain per km upper limits for flat/rolling/hilly; anything above is mountainous.
TERRAIN_GAIN_PER_KM = (20.0, 40.0, 60.0)

EngineMode = Literal["auto", "python", "numba"]


class PipelineError(RuntimeError):
    """Raised when a processing stage produces unusable output."""


@dataclass(frozen=True)
class Trace:
    distances: np.ndarray
    elevations: np.ndarray

    def __post_init__(self) -> None:
        d = np.array(self.distances, dtype=np.float64)
        e = np.array(self.elevations, dtype=np.float64)
        if d.ndim != 1 or e.ndim != 1:
            raise ValueError("Trace arrays must be one-dimensional")
        if d.size != e.size:
            raise ValueError(f"Trace length mismatch: {d.size} distances vs {e.size} elevations")
        if d.size == 0:
            raise ValueError("Trace must contain at least one sample")
        if not (np.all(np.isfinite(d)) and np.all(np.isfinite(e))):
            raise ValueError("Trace contains non-finite values")
        if d[0] < 0.0:
            raise ValueError(f"Trace distances must be >= 0 (got {d[0]:.3f})")
        if d.size > 1 and np.any(np.diff(d) < 0.0):
            raise ValueError("Trace distances must be non-decreasing")
        d.setflags(write=False)
        e.setflags(write=False)
        object.__setattr__(self, "distances", d)
        object.__setattr__(self, "elevations", e)

    def __len__(self) -> int:
        return int(self.distances.size)

    @property
    def total_distance(self) -> float:
        return float(self.distances[-1])

    def with_elevations(self, elevations: np.ndarray) -> "Trace":
        return Trace(self.distances, elevations)


@dataclass(frozen=True)
class ResampledTrace(Trace):
    spacing: float = 0.0
    # True when the sample ceiling was hit and the trace carries the raw samples.
    limited: bool = False

    def with_elevations(self, elevations: np.ndarray) -> "ResampledTrace":
        return ResampledTrace(self.distances, elevations, spacing=self.spacing, limited=self.limited)


def _resolve_engine(engine: str) -> EngineMode:
    normalized = engine.strip().lower() if engine else "auto"
    if normalized not in {"auto", "python", "numba"}:
        logging.warning("Unknown engine '%s'; falling back to auto", engine)
        return "auto"
    return normalized  # type: ignore[return-value]


# -----------------
# Resampling
# -----------------

def resample_uniform(trace: Trace, spacing: float, max_points: int = MAX_RESAMPLE_POINTS) -> ResampledTrace:
    """Linearly interpolate ``trace`` onto ``0, s, 2s, ..., total``.

    The final sample sits at the total distance and may be closer than one
    full step to its predecessor. When the implied sample count exceeds
    ``max_points`` the raw samples come back unchanged with ``limited=True``.
    """
    if not (math.isfinite(spacing) and spacing > 0.0):
        raise ValueError(f"Resample spacing must be > 0 (got {spacing})")
    d = trace.distances
    e = trace.elevations
    total = trace.total_distance
    if len(trace) == 1 or total <= 0.0:
        return ResampledTrace(np.array([0.0]), e[:1], spacing=spacing)

    steps = int(math.ceil(total / spacing - 1e-9))
    num = steps + 1
    if num > max_points:
        logging.warning(
            "Resampling %.1f m at %.3f m needs %d points (limit %d); using raw samples",
            total,
            spacing,
            num,
            max_points,
        )
        return ResampledTrace(d, e, spacing=spacing, limited=True)

    targets = np.minimum(np.arange(num, dtype=np.float64) * spacing, total)
    targets[-1] = total
    n = d.size
    idx = np.clip(np.searchsorted(d, targets, side="right") - 1, 0, n - 1)
    nxt = np.minimum(idx + 1, n - 1)
    d1 = d[idx]
    seg = d[nxt] - d1
    safe = seg >= DIST_EPS
    t = np.zeros(num, dtype=np.float64)
    t[safe] = (targets[safe] - d1[safe]) / seg[safe]
    np.clip(t, 0.0, 1.0, out=t)
    out = e[idx] + t * (e[nxt] - e[idx])
    out[0] = e[0]
    return ResampledTrace(targets, out, spacing=spacing)


# -----------------
# Outlier correction
# -----------------

def segment_gradients(trace: Trace) -> np.ndarray:
    """Per-segment rise over run; zero where the segment has no length."""
    dd = np.diff(trace.distances)
    de = np.diff(trace.elevations)
    grads = np.zeros(dd.size, dtype=np.float64)
    ok = dd >= DIST_EPS
    grads[ok] = de[ok] / dd[ok]
    return grads


def correct_outliers(trace: Trace, k: float = 3.0) -> Tuple[Trace, int]:
    """Replace samples reached by an anomalous gradient.

    Sample ``i`` is flagged when ``|g(i-1, i) - median(g)| > k * MAD``. Each
    flagged sample is rebuilt by distance-weighted interpolation between the
    nearest unflagged samples on either side (the trace end when none).
    Returns the corrected trace and the number of flagged samples.
    """
    n = len(trace)
    if n < 3:
        return trace, 0
    grads = segment_gradients(trace)
    med = float(np.median(grads))
    mad = float(np.median(np.abs(grads - med)))
    threshold = k * max(mad, MAD_FLOOR)
    bad = np.zeros(n, dtype=bool)
    bad[1:] = np.abs(grads - med) > threshold
    count = int(bad.sum())
    if count == 0:
        return trace, 0

    d = trace.distances
    e = trace.elevations
    good = np.flatnonzero(~bad)
    flagged = np.flatnonzero(bad)
    pos = np.searchsorted(good, flagged)
    lo = good[np.maximum(pos - 1, 0)]
    hi = np.where(pos < good.size, good[np.minimum(pos, good.size - 1)], n - 1)
    span = d[hi] - d[lo]
    t = np.zeros(flagged.size, dtype=np.float64)
    ok = span > DIST_EPS
    t[ok] = (d[flagged][ok] - d[lo][ok]) / span[ok]
    fixed = e.copy()
    fixed[flagged] = e[lo] + t * (e[hi] - e[lo])
    logging.debug("Outlier correction: %d/%d samples (median %.4f, MAD %.4f)", count, n, med, mad)
    return trace.with_elevations(fixed), count


# -----------------
# Smoothing
# -----------------

def adaptive_window(trace: Trace, alpha: float, window_min: int, window_max: int) -> int:
    """Window size scaled by elevation noise relative to sample spacing (always odd)."""
    e = trace.elevations
    d = trace.distances
    sigma = float(np.std(np.diff(e), ddof=1)) if len(trace) > 2 else 0.0
    mu = max(float(np.mean(np.diff(d))), SPACING_EPS) if len(trace) > 1 else SPACING_EPS
    window = int(round(alpha * sigma / mu))
    window = min(max(window, int(window_min)), int(window_max))
    if window % 2 == 0:
        window += 1
    return max(window, 1)


def adaptive_gaussian_smooth(
    trace: Trace,
    alpha: float = 50.0,
    window_min: int = 51,
    window_max: int = 301,
) -> Tuple[Trace, int]:
    """Gaussian-weighted moving average (sd = window/6).

    Near the ends the window is clipped to the trace and the weights are
    centred on the middle of the clipped window, ``(start + end) // 2``.
    """
    n = len(trace)
    if n < GAUSSIAN_MIN_SAMPLES:
        return trace, 0
    window = adaptive_window(trace, alpha, window_min, window_max)
    half = window // 2
    sd = window / 6.0
    e = trace.elevations
    out = np.empty(n, dtype=np.float64)
    if n > 2 * half:
        offsets = np.arange(-half, half + 1, dtype=np.float64)
        weights = np.exp(-0.5 * (offsets / sd) ** 2)
        out[half: n - half] = np.convolve(e, weights, mode="valid") / weights.sum()
    for i in range(n):
        if half <= i < n - half:
            continue
        start = max(i - half, 0)
        end = min(i + half, n - 1)
        centre = (start + end) // 2
        w = np.exp(-0.5 * ((np.arange(start, end + 1) - centre) / sd) ** 2)
        out[i] = float(np.dot(w, e[start: end + 1]) / w.sum())
    return trace.with_elevations(out), window


def _lowpass_cutoff(cutoff_interval_m: float, spacing: float) -> Tuple[float, float]:
    nyquist = 0.5 / spacing
    cutoff = 1.0 / (2.0 * cutoff_interval_m)
    cutoff = min(max(cutoff, LOWPASS_MIN_FRACTION * nyquist), LOWPASS_MAX_FRACTION * nyquist)
    return cutoff, cutoff / nyquist


def zero_phase_lowpass(trace: Trace, cutoff_interval_m: float, order: int = 2) -> Tuple[Trace, Optional[float]]:
    """Second-order Butterworth low-pass run forward and backward.

    The cutoff keeps wavelengths of about twice ``cutoff_interval_m`` and is
    clamped to [0.01, 0.45] of Nyquist for the trace's mean spacing. Returns
    the input unchanged (and ``None`` for the cutoff) when the trace is too
    short or the filter cannot be designed.
    """
    n = len(trace)
    if n < LOWPASS_MIN_SAMPLES:
        return trace, None
    spacing = float(np.mean(np.diff(trace.distances)))
    if not (math.isfinite(cutoff_interval_m) and cutoff_interval_m > 0.0 and spacing > SPACING_EPS):
        logging.warning(
            "Low-pass skipped: degenerate interval %.4f m or spacing %.6f m", cutoff_interval_m, spacing
        )
        return trace, None
    cutoff, wn = _lowpass_cutoff(cutoff_interval_m, spacing)
    try:
        b, a = signal.butter(order, wn, btype="low")
    except ValueError as exc:
        logging.warning("Low-pass design failed at Wn=%.4f: %s", wn, exc)
        return trace, None
    if not (np.all(np.isfinite(b)) and np.all(np.isfinite(a))) or np.any(np.abs(np.roots(a)) >= 1.0):
        logging.warning("Low-pass design at Wn=%.4f is unstable; returning unfiltered trace", wn)
        return trace, None
    filtered = signal.filtfilt(b, a, trace.elevations, padtype="odd")
    if not np.all(np.isfinite(filtered)):
        logging.warning("Low-pass produced non-finite output at Wn=%.4f; returning unfiltered trace", wn)
        return trace, None
    return trace.with_elevations(filtered), cutoff


SmoothingInfo = Dict[str, float]
Smoother = Callable[[Trace, "Configuration"], Tuple[Trace, SmoothingInfo]]


def _smooth_gaussian(trace: Trace, config: "Configuration") -> Tuple[Trace, SmoothingInfo]:
    out, window = adaptive_gaussian_smooth(trace, config.alpha, config.window_min, config.window_max)
    return out, {"window": float(window)}


def _smooth_butterworth(trace: Trace, config: "Configuration") -> Tuple[Trace, SmoothingInfo]:
    out, cutoff = zero_phase_lowpass(trace, config.cutoff_interval_m)
    return out, ({"cutoff_hz": cutoff} if cutoff is not None else {})


def _smooth_none(trace: Trace, config: "Configuration") -> Tuple[Trace, SmoothingInfo]:
    return trace, {}


SMOOTHERS: Dict[str, Smoother] = {
    "gaussian": _smooth_gaussian,
    "butterworth": _smooth_butterworth,
    "none": _smooth_none,
}


def get_smoother(name: str) -> Smoother:
    try:
        return SMOOTHERS[name]
    except KeyError:
        raise ValueError(f"Unknown smoother '{name}' (expected one of {sorted(SMOOTHERS)})") from None


# -----------------
# Gradient post-processing
# -----------------

def post_process_gradients(
    smoothed: Trace,
    reference: Optional[Trace] = None,
    *,
    enable_blending: bool = False,
    blend_factor: float = 0.0,
    enable_capping: bool = True,
    gradient_min: float = -0.5,
    gradient_max: float = 0.6,
) -> Trace:
    """Blend, then clamp, segment gradients and re-integrate from the first sample."""
    if len(smoothed) < 2:
        return smoothed
    grads = segment_gradients(smoothed)
    if enable_blending and reference is not None:
        if len(reference) != len(smoothed):
            raise ValueError("Blend reference must match the smoothed trace length")
        grads = blend_factor * segment_gradients(reference) + (1.0 - blend_factor) * grads
    if enable_capping:
        grads = np.clip(grads, gradient_min, gradient_max)
    steps = grads * np.diff(smoothed.distances)
    out = np.empty(len(smoothed), dtype=np.float64)
    out[0] = smoothed.elevations[0]
    out[1:] = out[0] + np.cumsum(steps)
    return smoothed.with_elevations(out)


# -----------------
# Gain / loss accumulation
# -----------------

def naive_gain_loss(elevations: np.ndarray) -> Tuple[float, float]:
    deltas = np.diff(np.asarray(elevations, dtype=np.float64))
    gain = float(deltas[deltas > 0.0].sum())
    loss = float(-deltas[deltas < 0.0].sum())
    return gain, loss


def _deadzone_loop(elev: np.ndarray, gain_thr: float, loss_thr: float) -> Tuple[float, float]:
    gain = 0.0
    loss = 0.0
    n = elev.shape[0]
    if n == 0:
        return gain, loss
    base = elev[0]
    for i in range(1, n):
        delta = elev[i] - base
        if delta > gain_thr:
            gain += delta
            base = elev[i]
        elif delta < -loss_thr:
            loss -= delta
            base = elev[i]
    return gain, loss


def _spike_loop(elev: np.ndarray, threshold: float) -> Tuple[np.ndarray, int]:
    out = elev.copy()
    n = out.shape[0]
    count = 0
    half = threshold * 0.5
    for i in range(1, n - 1):
        up = out[i] - out[i - 1]
        down = out[i + 1] - out[i]
        if (abs(up) > threshold or abs(down) > threshold) and up * down < 0.0:
            if abs(up) > half and abs(down) > half:
                out[i] = 0.5 * (out[i - 1] + out[i + 1])
                count += 1
    return out, count


_deadzone_kernel = njit(cache=True, nogil=True)(_deadzone_loop)
_spike_kernel = njit(cache=True, nogil=True)(_spike_loop)


def deadzone_gain_loss(
    elevations: np.ndarray,
    gain_threshold: float,
    loss_threshold: float,
    engine: str = "auto",
) -> Tuple[float, float]:
    """Directional dead-zone accumulation against a moving baseline.

    The baseline only advances when the sample rises more than
    ``gain_threshold`` above it or drops more than ``loss_threshold`` below.
    """
    if gain_threshold < 0.0 or loss_threshold < 0.0:
        raise ValueError("Dead-zone thresholds must be >= 0")
    elev = np.ascontiguousarray(elevations, dtype=np.float64)
    if _resolve_engine(engine) == "python":
        gain, loss = _deadzone_loop(elev, float(gain_threshold), float(loss_threshold))
    else:
        gain, loss = _deadzone_kernel(elev, float(gain_threshold), float(loss_threshold))
    return float(gain), float(loss)


def step_deadzone_gain_loss(elevations: np.ndarray, epsilon: float) -> Tuple[float, float]:
    """Naive sums over the consecutive steps whose size exceeds ``epsilon``; smaller steps are dropped."""
    if epsilon < 0.0:
        raise ValueError("Dead-zone epsilon must be >= 0")
    deltas = np.diff(np.asarray(elevations, dtype=np.float64))
    deltas = deltas[np.abs(deltas) > epsilon]
    gain = float(deltas[deltas > 0.0].sum())
    loss = float(-deltas[deltas < 0.0].sum())
    return gain, loss


def reject_spikes(elevations: np.ndarray, threshold: float, engine: str = "auto") -> Tuple[np.ndarray, int]:
    """Flatten single-sample reversals whose legs exceed the threshold.

    A sample is a spike when the legs into and out of it have opposite signs,
    one exceeds ``threshold`` and both exceed half of it; it is replaced by the
    mean of its neighbours. Returns the new elevations and the spike count.
    """
    elev = np.ascontiguousarray(elevations, dtype=np.float64)
    if threshold <= 0.0 or elev.size < 3:
        return elev.copy(), 0
    if _resolve_engine(engine) == "python":
        out, count = _spike_loop(elev, float(threshold))
    else:
        out, count = _spike_kernel(elev, float(threshold))
    return out, int(count)


def local_noise(elevations: np.ndarray) -> float:
    elev = np.asarray(elevations, dtype=np.float64)
    if elev.size < 5:
        return 0.2
    return float(np.std(np.diff(elev)))


def adaptive_epsilon(elevations: np.ndarray, cutoff_interval_m: float) -> float:
    """Step dead-zone that grows with the interval and the trace's own noise, capped at 0.5 m."""
    base = 0.05 + 0.02 * cutoff_interval_m
    return min(max(base, 0.5 * local_noise(elevations)), 0.5)


def gain_loss_ratio(gain: float, loss: float) -> float:
    """Loss as a percentage of gain; 100 when there is no gain."""
    if gain > 0.0:
        return loss / gain * 100.0
    return 100.0


def classify_terrain(trace: Trace) -> TerrainClass:
    gain, _ = naive_gain_loss(trace.elevations)
    km = trace.total_distance / 1000.0
    per_km = gain / km if km > 0.0 else 0.0
    for name, limit in zip(TERRAIN_CLASSES, TERRAIN_GAIN_PER_KM):
        if per_km < limit:
            return name
    return "mountainous"
