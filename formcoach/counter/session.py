from __future__ import annotations
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Literal, Mapping, Optional, Sequence, Union

from formcoach.common.config import SETTINGS
from formcoach.common.errors import ProviderError
from formcoach.common.events import EventType, PartialEvent, RepEvent, SessionEvent, WarningEvent, to_payload
from formcoach.counter.keypoints import Keypoint
from formcoach.counter.pipeline import ExerciseTracker, PosePipeline, PoseProvider, TrackerStep
from formcoach.counter.web_pipeline import WebKeypointPipeline
from formcoach.data.db import SessionStore
from formcoach.exercises.registry import get_exercise

logger = logging.getLogger(__name__)

SessionState = Literal["idle", "running", "paused"]
EventSink = Callable[[dict], None]


@dataclass
class SessionStatus:
    session_id: str
    state: SessionState
    count: int
    exercise: Optional[str] = None


@dataclass
class FinalSummary:
    session_id: str
    total_reps: int
    rom_summary: Optional[dict] = None


class CoachSessionManager:
    """
    One live coaching session at a time. Frames arrive from the camera thread
    (PosePipeline) or from a browser (WebKeypointPipeline); each one runs
    through an ExerciseTracker and the outcome goes to the event sink and the store.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        locale: Optional[str] = None,
        mirror: Optional[bool] = None,
        camera_index: Optional[int] = None,
        provider: Optional[PoseProvider] = None,
        min_keypoint_score: Optional[float] = None,
    ):
        self.store = store
        self.min_keypoint_score = SETTINGS.min_keypoint_score if min_keypoint_score is None else min_keypoint_score
        self.locale = locale or SETTINGS.locale
        self.mirror = SETTINGS.mirror if mirror is None else mirror
        self.camera_index = SETTINGS.camera_index if camera_index is None else camera_index
        self.provider = provider
        self.active_id: Optional[str] = None
        self.active_pipeline: Optional[Union[PosePipeline, WebKeypointPipeline]] = None
        self.tracker: Optional[ExerciseTracker] = None
        self.target_reps: Optional[int] = None
        self.paused = False
        self.web_mode: bool = False
        self._event_sink: Optional[EventSink] = None
        self._lock = threading.RLock()

    @property
    def count(self) -> int:
        return self.tracker.count if self.tracker is not None else 0

    @property
    def exercise(self) -> Optional[str]:
        return self.tracker.exercise if self.tracker is not None else None

    def set_event_sink(self, sink: Optional[EventSink]):
        self._event_sink = sink

    def _emit(self, payload: dict):
        if self._event_sink is None:
            return
        try:
            self._event_sink(payload)
        except Exception:
            logger.exception("event sink failed for %s", payload.get("type"))

    def _emit_debug(self, ev: Any):
        """Forward a trace line (or a ready-made dict) to the sink."""
        if isinstance(ev, Mapping):
            payload = dict(ev)
        else:
            payload = {"type": EventType.TRACE.value, "msg": str(ev)}
        self._emit(payload)

    # Session lifecycle

    def start(self, exercise: str, target_reps: Optional[int] = None):
        entry = get_exercise(exercise)
        if self.active_pipeline is not None:
            self._emit_debug("stopping current session")
            self.stop(self.active_id)

        sid = str(uuid.uuid4())
        now = time.time()
        with self._lock:
            self.active_id = sid
            self.target_reps = target_reps
            self.paused = False
            self.tracker = ExerciseTracker(entry.name, debug_cb=self._emit_debug, min_score=self.min_keypoint_score)

        if self.store is not None:
            self.store.insert_session(sid, entry.name, now, target_reps)

        if self.web_mode:
            pipe = WebKeypointPipeline(self._on_frame, mirror=self.mirror, debug_cb=self._emit_debug)
        else:
            pipe = PosePipeline(
                self._on_frame,
                camera_index=self.camera_index,
                mirror=self.mirror,
                provider=self.provider,
                on_error=self._on_error,
                debug_cb=self._emit_debug,
            )
        self.active_pipeline = pipe
        pipe.start()

        logger.info("session %s started: %s (web=%s)", sid, entry.name, self.web_mode)
        self._emit(to_payload(SessionEvent(EventType.SESSION_STARTED, sid, entry.name, now)))
        return sid, f"started {entry.name}"

    def pause(self, session_id: Optional[str] = None) -> str:
        if self.active_pipeline is None:
            return self.active_id or ""
        self.active_pipeline.pause()
        self.paused = True
        self._emit(to_payload(SessionEvent(EventType.SESSION_PAUSED, self.active_id or "", self.exercise or "", time.time(), self.count)))
        return self.active_id or ""

    def resume(self, session_id: Optional[str] = None) -> str:
        if self.active_pipeline is None:
            return self.active_id or ""
        self.active_pipeline.resume()
        self.paused = False
        self._emit(to_payload(SessionEvent(EventType.SESSION_RESUMED, self.active_id or "", self.exercise or "", time.time(), self.count)))
        return self.active_id or ""

    def stop(self, session_id: Optional[str] = None) -> FinalSummary:
        pipe = self.active_pipeline
        if pipe is not None:
            pipe.stop()
            # the camera thread may be waiting on the lock inside _on_frame
            pipe.join(timeout=1.0)

        with self._lock:
            sid = self.active_id or ""
            exercise = self.exercise or ""
            total = self.count
            rom = self.tracker.finish() if self.tracker is not None else None
            rom_dict = rom.to_dict(self.locale) if rom is not None else None
            self.active_pipeline = None
            self.tracker = None
            self.active_id = None
            self.paused = False

        end = time.time()
        if sid and self.store is not None:
            self.store.stop_session(sid, end, total_reps=total, rom_summary=rom_dict)
        if sid:
            logger.info("session %s stopped after %d reps", sid, total)
            self._emit(to_payload(SessionEvent(EventType.SESSION_STOPPED, sid, exercise, end, total)))
        return FinalSummary(session_id=sid, total_reps=total, rom_summary=rom_dict)

    def status(self, session_id: Optional[str] = None) -> SessionStatus:
        if self.active_pipeline is None:
            state: SessionState = "idle"
        else:
            state = "paused" if self.paused else "running"
        return SessionStatus(session_id=self.active_id or "", state=state, count=self.count, exercise=self.exercise)

    def _on_error(self, err: ProviderError):
        # Called from the pipeline thread; the thread is already exiting.
        with self._lock:
            sid = self.active_id or ""
            self.active_pipeline = None
            self.tracker = None
            self.active_id = None
            self.paused = False
        if sid and self.store is not None:
            self.store.stop_session(sid, time.time())
        self._emit_debug(f"pipeline error: {err}")

    # Frame handling

    def _on_frame(self, keypoints: List[Keypoint], ts: float):
        with self._lock:
            if self.tracker is None or self.active_id is None:
                return
            step = self.tracker.step(keypoints, ts)
            self._publish(self.active_id, step, ts)

    def _publish(self, sid: str, step: TrackerStep, ts: float):
        res = step.result
        analysis = {"type": EventType.ANALYSIS.value, "session_id": sid, "ts": ts, "movement_phase": step.movement_phase}
        analysis.update(res.to_dict(self.locale))
        if step.integrated is not None:
            analysis["velocity_quality"] = step.integrated.quality
            analysis["velocity_score"] = step.integrated.quality_score
        self._emit(analysis)

        if step.rep is not None:
            rep = step.rep
            tempo = rep.tempo
            ev = RepEvent(
                EventType.REP, sid, ts,
                rep_index=rep.rep_index,
                rep_count=self.count,
                score=rep.score,
                worst_score=rep.worst_score,
                rom_deg=rep.rom_deg,
                tempo_ratio=round(tempo.ratio, 2) if tempo is not None else None,
                eccentric_ms=round(tempo.eccentric_ms) if tempo is not None else None,
                concentric_ms=round(tempo.concentric_ms) if tempo is not None else None,
            )
            payload = to_payload(ev)
            if self.store is not None:
                self.store.insert_rep(
                    sid, rep.rep_index, rep.start_ts, rep.end_ts, rep.duration_ms, rep.score, rep.worst_score,
                    rep.rom_deg, ev.eccentric_ms, ev.concentric_ms, ev.tempo_ratio,
                )
                self.store.insert_event(sid, ts, EventType.REP.value, self.count, payload)
            self._emit(payload)
            if tempo is not None:
                self._emit({"type": EventType.TEMPO.value, "session_id": sid, "ts": ts, **tempo.to_dict(self.locale)})
            if self.target_reps and self.count == self.target_reps:
                self._emit_debug(f"target reached: {self.target_reps}")

        if step.partial_reason is not None:
            payload = to_payload(PartialEvent(EventType.PARTIAL, sid, ts, step.partial_reason))
            if self.store is not None:
                self.store.insert_event(sid, ts, EventType.PARTIAL.value, self.count, payload)
            self._emit(payload)

        for w in step.new_warnings:
            payload = to_payload(WarningEvent(
                EventType.WARNING, sid, ts,
                warning_id=w.id,
                joint=w.channel,
                urgency=w.urgency,
                message=w.message(self.locale),
                extra=w.to_dict(self.locale),
            ))
            if self.store is not None:
                self.store.insert_event(sid, ts, EventType.WARNING.value, self.count, payload)
            self._emit(payload)

    # Web mode (toggled by the websocket on connect/disconnect)

    def set_web_mode(self, active: bool):
        self.web_mode = bool(active)

    def push_keypoints(
        self,
        keypoints: Sequence[Union[Keypoint, Mapping[str, Any]]],
        ts: Optional[float] = None,
    ) -> bool:
        pipe = self.active_pipeline
        if isinstance(pipe, WebKeypointPipeline):
            return pipe.push_keypoints(keypoints, ts)
        return False

