from __future__ import annotations
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

class EventType(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_STOPPED = "session_stopped"
    ANALYSIS = "analysis"
    REP = "rep"
    PARTIAL = "partial"
    TEMPO = "tempo"
    WARNING = "warning"
    TRACE = "trace"

@dataclass
class SessionEvent:
    type: EventType
    session_id: str
    exercise: str
    ts: float
    count: int = 0

@dataclass
class RepEvent:
    type: EventType
    session_id: str
    ts: float
    rep_index: int
    rep_count: int
    score: int
    worst_score: Optional[int] = None
    rom_deg: Optional[float] = None
    tempo_ratio: Optional[float] = None
    eccentric_ms: Optional[int] = None
    concentric_ms: Optional[int] = None

@dataclass
class PartialEvent:
    type: EventType
    session_id: str
    ts: float
    reason: str  # e.g., "bottom_not_reached"

@dataclass
class WarningEvent:
    type: EventType
    session_id: str
    ts: float
    warning_id: str
    joint: str
    urgency: str
    message: str
    extra: Dict[str, Any] = field(default_factory=dict)


def to_payload(ev: Any) -> dict:
    """Plain dict for JSON sinks; enum members become their values."""
    out = asdict(ev)
    out["type"] = ev.type.value
    return out
