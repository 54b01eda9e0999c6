from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from formcoach.common.errors import ConfigurationError


@dataclass(frozen=True)
class SmootherConfig:
    alpha: float = 0.6               # EMA weight of the newest sample
    outlier_threshold: float = 30.0  # deg jump between raw samples treated as a glitch
    max_outliers: int = 3            # after this many glitches in a row, accept the new level

    def __post_init__(self):
        if not (0.0 < self.alpha <= 1.0):
            raise ConfigurationError(f"alpha must be in (0, 1], got {self.alpha}")
        if self.outlier_threshold <= 0:
            raise ConfigurationError("outlier_threshold must be positive")
        if self.max_outliers < 0:
            raise ConfigurationError("max_outliers must be >= 0")


@dataclass(frozen=True)
class SmootherState:
    value: Optional[float] = None     # smoothed output
    last_raw: Optional[float] = None  # last accepted raw sample
    outliers: int = 0


DEFAULT_SMOOTHER = SmootherConfig()


def smooth(state: SmootherState, raw: float, cfg: SmootherConfig = DEFAULT_SMOOTHER) -> Tuple[float, SmootherState]:
    """One EMA step with outlier rejection. Returns (smoothed, new_state)."""
    if raw is None or not math.isfinite(raw):
        raise ValueError(f"cannot smooth non-finite sample {raw!r}")
    if state.value is None or state.last_raw is None:
        return raw, SmootherState(value=raw, last_raw=raw, outliers=0)

    if abs(raw - state.last_raw) > cfg.outlier_threshold:
        if state.outliers < cfg.max_outliers:
            return state.value, SmootherState(state.value, state.last_raw, state.outliers + 1)
        # the jump persisted: it is real motion, restart from here
        return raw, SmootherState(value=raw, last_raw=raw, outliers=0)

    val = cfg.alpha * raw + (1.0 - cfg.alpha) * state.value
    return val, SmootherState(value=val, last_raw=raw, outliers=0)


def smooth_channels(
    states: Mapping[str, SmootherState],
    raw: Mapping[str, Optional[float]],
    cfg: SmootherConfig = DEFAULT_SMOOTHER,
) -> Tuple[Dict[str, float], Dict[str, SmootherState]]:
    """
    Smooth every available channel. Missing channels (None) are skipped and
    keep their previous smoother state untouched.
    """
    out: Dict[str, float] = {}
    new_states: Dict[str, SmootherState] = dict(states)
    for name, value in raw.items():
        if value is None:
            continue
        out[name], new_states[name] = smooth(states.get(name, SmootherState()), value, cfg)
    return out, new_states
