from __future__ import annotations

# Pipeline configuration: bounded, immutable parameter records, named presets,
# JSON overrides and the lazy configuration spaces consumed by eg_search.

import itertools
import json
import logging
import math
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from eg_signal import SMOOTHERS, TERRAIN_CLASSES, TerrainClass, _resolve_engine


DEADZONE_MODES = ("naive", "directional", "adaptive")

PARAM_BOUNDS: Dict[str, Tuple[float, float]] = {
    "resample_spacing_m": (0.1, 100.0),
    "cutoff_interval_m": (0.05, 50.0),
    "outlier_k": (0.5, 50.0),
    "alpha": (0.0, 1000.0),
    "window_min": (1, 2001),
    "window_max": (1, 2001),
    "gradient_min": (-5.0, 0.0),
    "gradient_max": (0.0, 5.0),
    "blend_factor": (0.0, 1.0),
    "gain_threshold_m": (0.0, 20.0),
    "loss_threshold_m": (0.0, 20.0),
    "spike_threshold_flat": (0.05, 100.0),
    "spike_threshold_rolling": (0.05, 100.0),
    "spike_threshold_hilly": (0.05, 100.0),
    "spike_threshold_mountainous": (0.05, 100.0),
}

_INT_FIELDS = {"window_min", "window_max"}


@dataclass(frozen=True)
class Configuration:
    smoother: str = "gaussian"
    deadzone_mode: str = "naive"
    resample_spacing_m: float = 1.0
    # Derive spacing as max(cutoff_interval_m / 3, 0.5) instead of resample_spacing_m.
    spacing_from_interval: bool = False
    enable_outlier_correction: bool = True
    outlier_k: float = 3.0
    alpha: float = 50.0
    window_min: int = 51
    window_max: int = 301
    cutoff_interval_m: float = 2.0
    enable_capping: bool = True
    gradient_min: float = -0.5
    gradient_max: float = 0.6
    enable_blending: bool = False
    blend_factor: float = 0.0
    gain_threshold_m: float = 0.1
    loss_threshold_m: float = 0.05
    enable_spike_rejection: bool = False
    spike_threshold_flat: float = 1.0
    spike_threshold_rolling: float = 2.0
    spike_threshold_hilly: float = 3.0
    spike_threshold_mountainous: float = 6.0
    engine: str = "auto"

    def __post_init__(self) -> None:
        if self.smoother not in SMOOTHERS:
            raise ValueError(f"Unknown smoother '{self.smoother}' (expected one of {sorted(SMOOTHERS)})")
        if self.deadzone_mode not in DEADZONE_MODES:
            raise ValueError(f"Unknown dead-zone mode '{self.deadzone_mode}' (expected one of {DEADZONE_MODES})")
        object.__setattr__(self, "engine", _resolve_engine(self.engine))
        for name, (lo, hi) in PARAM_BOUNDS.items():
            raw = getattr(self, name)
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"{name} must be numeric (got {raw!r})") from None
            if math.isnan(value):
                raise ValueError(f"{name} must not be NaN")
            clamped = min(max(value, lo), hi)
            if clamped != value:
                logging.warning("Config %s=%s outside [%s, %s]; clamped to %s", name, raw, lo, hi, clamped)
            if name in _INT_FIELDS:
                object.__setattr__(self, name, int(round(clamped)))
            else:
                object.__setattr__(self, name, clamped)
        if self.window_max < self.window_min:
            logging.warning(
                "Config window_max=%d below window_min=%d; raised to match", self.window_max, self.window_min
            )
            object.__setattr__(self, "window_max", self.window_min)
        for name in ("spacing_from_interval", "enable_outlier_correction", "enable_capping", "enable_blending", "enable_spike_rejection"):
            object.__setattr__(self, name, bool(getattr(self, name)))

    def effective_spacing(self) -> float:
        if self.spacing_from_interval:
            return max(self.cutoff_interval_m / 3.0, 0.5)
        return self.resample_spacing_m

    def spike_threshold_for(self, terrain: TerrainClass) -> float:
        if terrain not in TERRAIN_CLASSES:
            raise ValueError(f"Unknown terrain class '{terrain}'")
        return float(getattr(self, f"spike_threshold_{terrain}"))

    def as_row(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def describe(self) -> str:
        """Compact ``key=value`` list of the fields that differ from the defaults."""
        parts = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value != f.default:
                parts.append(f"{f.name}={value:g}" if isinstance(value, float) else f"{f.name}={value}")
        return " ".join(parts) if parts else "defaults"


PRESETS: Dict[str, Configuration] = {
    "default": Configuration(),
    "aggressive": Configuration(),
    "conservative": Configuration(
        alpha=20.0,
        window_min=21,
        window_max=101,
        outlier_k=5.0,
        gradient_min=-1.0,
        gradient_max=1.0,
        blend_factor=0.2,
        enable_blending=True,
    ),
    "moderate": Configuration(
        alpha=35.0,
        window_min=31,
        window_max=151,
        outlier_k=4.0,
        gradient_min=-0.7,
        gradient_max=0.8,
        blend_factor=0.15,
        enable_blending=True,
    ),
    "experimental": Configuration(
        alpha=15.0,
        window_min=15,
        window_max=81,
        outlier_k=7.0,
        gradient_min=-2.0,
        gradient_max=2.0,
        blend_factor=0.3,
        enable_capping=False,
        enable_blending=True,
    ),
    "butterworth": Configuration(
        smoother="butterworth",
        deadzone_mode="adaptive",
        spacing_from_interval=True,
        enable_outlier_correction=False,
        enable_capping=False,
        cutoff_interval_m=2.275,
    ),
    "deadzone": Configuration(
        smoother="butterworth",
        deadzone_mode="directional",
        spacing_from_interval=True,
        enable_outlier_correction=False,
        enable_capping=False,
        cutoff_interval_m=2.275,
        gain_threshold_m=0.1,
        loss_threshold_m=0.05,
        enable_spike_rejection=True,
    ),
}


def get_preset(name: str) -> Configuration:
    key = (name or "default").strip().lower()
    if key not in PRESETS:
        raise ValueError(f"Unknown preset '{name}' (expected one of {sorted(PRESETS)})")
    return PRESETS[key]


_FIELD_NAMES = {f.name for f in fields(Configuration)}


def _coerce_overrides(data: Mapping[str, Any], source: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in _FIELD_NAMES:
            logging.warning("Ignoring unknown config key '%s' in %s", key, source)
            continue
        if isinstance(value, (dict, list)):
            logging.warning("Ignoring non-scalar value for '%s' in %s", key, source)
            continue
        out[key] = value
    return out


def load_configuration(path: str, base: Optional[Configuration] = None) -> Configuration:
    """Read a JSON object of field overrides, optionally naming a ``preset`` to start from."""
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must hold a JSON object")
    data = dict(data)
    start = get_preset(data.pop("preset")) if "preset" in data else (base or Configuration())
    return replace(start, **_coerce_overrides(data, path))


# -----------------
# Configuration spaces
# -----------------

def _apply(base: Configuration, names: Sequence[str], combo: Sequence[Any]) -> Configuration:
    updates: Dict[str, Any] = {}
    for name, value in zip(names, combo):
        if isinstance(value, Mapping):
            updates.update(value)
        else:
            updates[name] = value
    return replace(base, **updates)


class GridSpace:
    """Cartesian product over per-dimension value lists.

    A dimension's values are either scalars for the field of the same name or
    mappings of several field updates (e.g. a gain/loss threshold pair).
    """

    def __init__(self, base: Configuration, dimensions: Mapping[str, Sequence[Any]]) -> None:
        self.base = base
        self.names: List[str] = list(dimensions)
        self.values: List[Tuple[Any, ...]] = []
        for name in self.names:
            vals = tuple(dimensions[name])
            if not vals:
                raise ValueError(f"Grid dimension '{name}' has no values")
            for v in vals:
                keys = list(v) if isinstance(v, Mapping) else [name]
                unknown = [k for k in keys if k not in _FIELD_NAMES]
                if unknown:
                    raise ValueError(f"Grid dimension '{name}' sets unknown field(s) {unknown}")
                try:
                    _apply(base, [name], [v])
                except (TypeError, ValueError) as exc:
                    raise ValueError(f"Grid dimension '{name}' has invalid value {v!r}: {exc}") from None
            self.values.append(vals)

    def __len__(self) -> int:
        return math.prod(len(v) for v in self.values)

    def __iter__(self) -> Iterator[Configuration]:
        for combo in itertools.product(*self.values):
            yield _apply(self.base, self.names, combo)


class ScanSpace:
    """One numeric field stepped from ``start`` to ``stop`` inclusive."""

    def __init__(self, base: Configuration, name: str, start: float, stop: float, step: float) -> None:
        if name not in PARAM_BOUNDS:
            raise ValueError(f"Cannot scan '{name}': not a bounded numeric field")
        if not step > 0.0:
            raise ValueError(f"Scan step must be > 0 (got {step})")
        if stop < start:
            raise ValueError(f"Scan stop {stop} is below start {start}")
        self.base = base
        self.name = name
        self.start = float(start)
        self.stop = float(stop)
        self.step = float(step)
        self._count = int(math.floor((self.stop - self.start) / self.step + 1e-9)) + 1

    def values(self) -> List[float]:
        return [round(self.start + i * self.step, 10) for i in range(self._count)]

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[Configuration]:
        for value in self.values():
            yield replace(self.base, **{self.name: value})


class ListSpace:
    def __init__(self, configs: Sequence[Configuration]) -> None:
        self.configs = tuple(configs)

    def __len__(self) -> int:
        return len(self.configs)

    def __iter__(self) -> Iterator[Configuration]:
        return iter(self.configs)


class ChainSpace:
    def __init__(self, *spaces: "ConfigSpace") -> None:
        self.spaces = spaces

    def __len__(self) -> int:
        return sum(len(s) for s in self.spaces)

    def __iter__(self) -> Iterator[Configuration]:
        for space in self.spaces:
            yield from space


ConfigSpace = Union[GridSpace, ScanSpace, ListSpace, ChainSpace]


DEFAULT_SPIKE_THRESHOLDS: Dict[str, List[float]] = {
    "spike_threshold_flat": [0.5, 0.8, 1.0, 1.2, 1.5, 1.8, 2.0],
    "spike_threshold_rolling": [1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0],
    "spike_threshold_hilly": [2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0],
    "spike_threshold_mountainous": [4.0, 5.0, 6.0, 7.0, 8.0, 10.0, 12.0],
}
DEFAULT_GAIN_THRESHOLDS = [0.05, 0.08, 0.10, 0.12, 0.15, 0.18, 0.20]
DEFAULT_LOSS_THRESHOLDS = [0.03, 0.05, 0.07, 0.10, 0.12, 0.15]
DEFAULT_GRADIENT_CAPS_PCT = [20.0, 25.0, 30.0, 35.0, 40.0, 45.0]
DIRECTIONAL_DEADZONE_PAIRS = [
    (0.1, 0.01), (0.1, 0.05), (0.2, 0.02), (0.2, 0.05),
    (0.3, 0.05), (0.3, 0.1), (0.4, 0.05), (0.4, 0.1),
    (0.5, 0.1), (0.5, 0.2), (0.6, 0.1), (0.6, 0.2),
    (1.0, 0.1), (1.0, 0.2),
]


def gradient_cap_values(caps_pct: Sequence[float]) -> List[Dict[str, Any]]:
    return [
        {"enable_capping": True, "gradient_min": -cap / 100.0, "gradient_max": cap / 100.0}
        for cap in caps_pct
    ]


def deadzone_pair_values(pairs: Sequence[Tuple[float, float]]) -> List[Dict[str, float]]:
    return [{"gain_threshold_m": g, "loss_threshold_m": l} for g, l in pairs]


def optimizer_space(base: Optional[Configuration] = None) -> GridSpace:
    """Full spike/dead-zone/gradient-cap grid (about 600k configurations)."""
    dims: Dict[str, Sequence[Any]] = dict(DEFAULT_SPIKE_THRESHOLDS)
    dims["gain_threshold_m"] = DEFAULT_GAIN_THRESHOLDS
    dims["loss_threshold_m"] = DEFAULT_LOSS_THRESHOLDS
    dims["gradient_cap"] = gradient_cap_values(DEFAULT_GRADIENT_CAPS_PCT)
    return GridSpace(base or PRESETS["deadzone"], dims)


def deadzone_space(base: Optional[Configuration] = None) -> GridSpace:
    return GridSpace(base or PRESETS["deadzone"], {"deadzone": deadzone_pair_values(DIRECTIONAL_DEADZONE_PAIRS)})


def interval_scan_space(
    base: Optional[Configuration] = None,
    start: float = 0.1,
    stop: float = 7.0,
    step: float = 0.025,
) -> ScanSpace:
    return ScanSpace(base or PRESETS["butterworth"], "cutoff_interval_m", start, stop, step)


def preset_space(names: Optional[Sequence[str]] = None) -> ListSpace:
    return ListSpace([get_preset(n) for n in (names or sorted(PRESETS))])


def load_parameter_space(path: str) -> ConfigSpace:
    """Build a space from JSON.

    Accepts ``{"preset": ..., "base": {...}, "grid": {field: [values]}}`` or
    ``{"preset": ..., "base": {...}, "scan": {"name", "start", "stop", "step"}}``.
    """
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Parameter space file {path} must hold a JSON object")
    base = get_preset(data.get("preset", "default"))
    overrides = data.get("base") or {}
    if overrides:
        base = replace(base, **_coerce_overrides(overrides, path))
    if "scan" in data:
        scan = data["scan"]
        try:
            return ScanSpace(base, str(scan["name"]), float(scan["start"]), float(scan["stop"]), float(scan["step"]))
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Invalid scan block in {path}: {exc}") from None
    grid = data.get("grid")
    if not isinstance(grid, dict) or not grid:
        raise ValueError(f"{path} must define a non-empty 'grid' or a 'scan' block")
    dims: Dict[str, Sequence[Any]] = {}
    for name, values in grid.items():
        if not isinstance(values, list):
            logging.warning("Ignoring grid dimension '%s' in %s: expected a list", name, path)
            continue
        dims[name] = values
    return GridSpace(base, dims)
