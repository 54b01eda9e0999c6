from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from formcoach.common.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CyclePhases:
    """Exercise-specific names for the four positions of a rep cycle."""
    top: str = "standing"
    descending: str = "descending"
    bottom: str = "bottom"
    ascending: str = "ascending"


@dataclass(frozen=True)
class CycleConfig:
    top: float                  # primary angle above this is the top zone
    bottom: float               # below this is the bottom zone
    margin: float = 5.0         # passing a threshold by this much commits at once
    confirm_frames: int = 2     # otherwise the zone must persist this many frames
    deadband: float = 1.0       # deg/frame of smoothed motion needed to call a direction
    starts_at_bottom: bool = False  # deadlift: a rep is bottom -> top, counted at the top
    names: CyclePhases = CyclePhases()

    def __post_init__(self):
        if self.bottom >= self.top:
            raise ConfigurationError(f"bottom threshold {self.bottom} must be below top {self.top}")
        if self.confirm_frames < 1:
            raise ConfigurationError("confirm_frames must be >= 1")
        if self.margin < 0 or self.deadband < 0:
            raise ConfigurationError("margin and deadband must be >= 0")


@dataclass(frozen=True)
class CycleState:
    phase: str
    rep_count: int = 0
    bottom_reached: bool = False
    descended: bool = False     # left the top this cycle
    last_angle: Optional[float] = None
    pending_zone: Optional[str] = None
    pending_frames: int = 0
    last_transition_ts: Optional[float] = None


@dataclass(frozen=True)
class CycleStep:
    state: CycleState
    rep_completed: bool = False
    partial: bool = False        # came back to the top without reaching the bottom
    changed: bool = False


def initial_cycle(cfg: CycleConfig) -> CycleState:
    if cfg.starts_at_bottom:
        return CycleState(phase=cfg.names.bottom, bottom_reached=True)
    return CycleState(phase=cfg.names.top)


def _zone(angle: float, cfg: CycleConfig) -> str:
    if angle > cfg.top:
        return "top"
    if angle < cfg.bottom:
        return "bottom"
    return "mid"


def step_cycle(
    state: CycleState,
    angle: float,
    cfg: CycleConfig,
    ts: Optional[float] = None,
    debug_cb: Optional[Callable[[str], None]] = None,
) -> CycleStep:
    """
    Advance the rep cycle by one smoothed primary-angle sample.

    top -> descending -> bottom -> ascending -> top closes one rep.
    Zone entries need a margin past the threshold or `confirm_frames`
    consecutive frames. Between the zones the phase follows the direction of
    motion, and once the bottom was reached only ascending is allowed.
    """
    dbg = debug_cb or (lambda *_: None)
    names = cfg.names
    zone = _zone(angle, cfg)

    # First sample: adopt the zone without counting anything.
    if state.last_angle is None:
        if zone == "top":
            st = replace(state, phase=names.top, bottom_reached=False, last_angle=angle)
        elif zone == "bottom":
            st = replace(state, phase=names.bottom, bottom_reached=True, last_angle=angle)
        else:
            st = replace(state, last_angle=angle)
        return CycleStep(st, changed=st.phase != state.phase)

    delta = angle - state.last_angle
    phase = state.phase
    bottom_reached = state.bottom_reached
    rep_count = state.rep_count
    pending_zone = None
    pending_frames = 0
    descended = state.descended
    rep_completed = False
    partial = False

    if zone in ("top", "bottom"):
        target = names.top if zone == "top" else names.bottom
        if phase != target:
            strong = (angle > cfg.top + cfg.margin) if zone == "top" else (angle < cfg.bottom - cfg.margin)
            frames = state.pending_frames + 1 if state.pending_zone == zone else 1
            if strong or frames >= cfg.confirm_frames:
                phase = target
                if zone == "bottom":
                    bottom_reached = True
                elif bottom_reached:
                    rep_completed = True
                    rep_count += 1
                    bottom_reached = False
                    descended = False
                else:
                    partial = descended
                    descended = False
            else:
                pending_zone = zone
                pending_frames = frames
    else:
        if delta < -cfg.deadband:
            direction = "down"
        elif delta > cfg.deadband:
            direction = "up"
        else:
            direction = None
        # the primary angle always shrinks on the way to the bottom zone
        if phase == names.top:
            if direction == "down":
                phase = names.descending
        elif bottom_reached:
            if direction == "up":
                phase = names.ascending
        elif direction == "down":
            phase = names.descending
        elif direction == "up":
            phase = names.ascending

    if phase == names.descending:
        descended = True

    changed = phase != state.phase
    if changed:
        dbg(f"state→{phase}")
        logger.debug("phase %s -> %s at %.1f deg", state.phase, phase, angle)

    new_state = CycleState(
        phase=phase,
        rep_count=rep_count,
        bottom_reached=bottom_reached,
        descended=descended,
        last_angle=angle,
        pending_zone=pending_zone,
        pending_frames=pending_frames,
        last_transition_ts=ts if changed else state.last_transition_ts,
    )
    return CycleStep(new_state, rep_completed=rep_completed, partial=partial, changed=changed)
