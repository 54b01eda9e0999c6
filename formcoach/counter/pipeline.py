from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Protocol

import cv2
import numpy as np

from formcoach.common.errors import ProviderError
from formcoach.counter.keypoints import Keypoint, Pose, keypoints_from_landmarks, mirror_keypoints
from formcoach.exercises.base import AnalysisResult
from formcoach.exercises.registry import get_exercise
from formcoach.tracking.integrated import IntegratedResult, IntegratedState, analyze_integrated
from formcoach.tracking.prediction import AnglePredictionEngine, PredictiveWarning, prediction_thresholds_for
from formcoach.tracking.rom import RomSessionSummary, rom_tracker_for
from formcoach.tracking.velocity import (
    TRACKED_JOINTS,
    JointVelocity,
    MovementPhase,
    MovementPhaseDetector,
    TempoAnalysis,
    TempoTracker,
    VelocityTracker,
    phase_from_cycle,
    velocity_config,
)

logger = logging.getLogger(__name__)


class PoseProvider(Protocol):
    """Turns one BGR frame into 33 keypoints, or None when no body was found."""

    def estimate(self, frame: np.ndarray) -> Optional[List[Keypoint]]:
        ...


class MediapipePoseProvider:
    """MediaPipe BlazePose over OpenCV frames."""

    def __init__(self, min_detection_confidence: float = 0.5, min_tracking_confidence: float = 0.5, model_complexity: int = 1):
        import mediapipe as mp

        self._pose = mp.solutions.pose.Pose(
            model_complexity=model_complexity,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
        )

    def estimate(self, frame: np.ndarray) -> Optional[List[Keypoint]]:
        image = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        res = self._pose.process(image)
        if not res.pose_landmarks:
            return None
        return keypoints_from_landmarks(res.pose_landmarks.landmark)

    def close(self) -> None:
        self._pose.close()


@dataclass
class RepMetrics:
    rep_index: int
    start_ts: float          # ms
    end_ts: float
    duration_ms: float
    score: int
    worst_score: Optional[int]
    rom_deg: Optional[float]
    tempo: Optional[TempoAnalysis] = None


@dataclass
class TrackerStep:
    result: AnalysisResult
    movement_phase: MovementPhase = "isometric"
    velocities: Dict[str, JointVelocity] = field(default_factory=dict)
    rep: Optional[RepMetrics] = None
    partial_reason: Optional[str] = None
    new_warnings: List[PredictiveWarning] = field(default_factory=list)
    integrated: Optional[IntegratedResult] = None


class ExerciseTracker:
    """
    Runs one exercise analyzer plus the velocity, tempo, ROM and prediction
    trackers over a live keypoint stream. Owns the analyzer state.
    """

    def __init__(
        self,
        exercise: str,
        debug_cb: Optional[Callable[[str], None]] = None,
        min_score: Optional[float] = None,
    ):
        self.entry = get_exercise(exercise)
        self.exercise = self.entry.name
        self._dbg = debug_cb or (lambda *_: None)
        # landmarks below min_score count as missing
        self.cfg = self.entry.config if min_score is None else replace(self.entry.config, min_score=min_score)
        self.state = self.entry.create_state(self.cfg)
        self.velocity = VelocityTracker(self.exercise)
        self.velocity_cfg = velocity_config(self.exercise)
        self.phase_detector = MovementPhaseDetector()
        self.tempo = TempoTracker()
        self.rom = rom_tracker_for(self.exercise)
        if self.rom is not None:
            self.rom.start_tracking()
        self.prediction = AnglePredictionEngine(prediction_thresholds_for(self.exercise))
        self.integrated_state = IntegratedState()
        self._movement: MovementPhase = "isometric"
        self._rep_start: Optional[float] = None
        self._rep_scores: List[int] = []
        self._rep_min = float("inf")
        self._rep_max = float("-inf")

    @property
    def count(self) -> int:
        return self.state.rep_count

    def _reset_rep(self, ts: Optional[float]) -> None:
        self._rep_start = ts
        self._rep_scores = []
        self._rep_min = float("inf")
        self._rep_max = float("-inf")

    def step(self, keypoints: Pose, ts: float) -> TrackerStep:
        """Feed one frame (timestamp in ms)."""
        result, self.state = self.entry.analyze(keypoints, self.state, timestamp=ts, debug_cb=self._dbg, cfg=self.cfg)
        out = TrackerStep(result=result)
        if not result.is_valid:
            return out

        velocities = self.velocity.update_pose(keypoints, ts, self._movement)
        primary = velocities.get(self.velocity_cfg.primary_joint)
        idx = TRACKED_JOINTS[self.velocity_cfg.primary_joint]
        if primary is not None and idx < len(keypoints):
            self._movement = self.phase_detector.update(keypoints[idx].y, primary, ts).phase
        out.velocities = velocities
        out.movement_phase = self._movement

        if self.rom is not None:
            self.rom.record_angles(result.raw_angles)

        channels = {k: v for k, v in result.raw_angles.items() if k in self.prediction.thresholds}
        before = {w.id for w in self.prediction.active_warnings}
        pred = self.prediction.update(channels, ts)
        out.new_warnings = [w for w in pred.warnings if w.id not in before]

        out.integrated, self.integrated_state = analyze_integrated(
            result.raw_angles, velocities, ts, self._movement, self.integrated_state,
            feedbacks=result.feedbacks, bands=self.velocity_cfg.bands(self._movement),
        )

        if not self.entry.cyclic:
            return out

        cycle_phase = phase_from_cycle(result.phase, self.entry.phases)
        self.tempo.record(cycle_phase, ts, primary.smoothed_velocity if primary is not None and primary.is_valid else None)

        if self._rep_start is None and result.phase != self.entry.phases.top:
            self._reset_rep(ts)
        if self._rep_start is not None:
            self._rep_scores.append(result.score)
            angle = result.raw_angles.get(self.entry.primary_angle) if self.entry.primary_angle else None
            if angle is not None:
                self._rep_min = min(self._rep_min, angle)
                self._rep_max = max(self._rep_max, angle)

        if result.rep_completed:
            start = self._rep_start if self._rep_start is not None else ts
            rom = round(self._rep_max - self._rep_min, 1) if self._rep_max >= self._rep_min else None
            out.rep = RepMetrics(
                rep_index=result.rep_count,
                start_ts=start,
                end_ts=ts,
                duration_ms=ts - start,
                score=int(round(float(np.mean(self._rep_scores)))) if self._rep_scores else result.score,
                worst_score=result.rep_worst_score,
                rom_deg=rom,
                tempo=self.tempo.complete_rep(ts),
            )
            self._dbg(f"rep++ ({rom or 0:.1f}°)")
            self._reset_rep(None)
        elif result.partial_rep:
            out.partial_reason = "bottom_not_reached"
            self.tempo.reset()
            self._dbg("partial: bottom_not_reached")
            self._reset_rep(None)
        return out

    def finish(self) -> Optional[RomSessionSummary]:
        return self.rom.stop_tracking() if self.rom is not None else None


FrameCb = Callable[[List[Keypoint], float], None]


class PosePipeline(threading.Thread):
    """Camera loop: grab a frame, estimate the pose, hand keypoints (ms timestamps) to `on_frame`."""

    def __init__(
            self,
            on_frame: FrameCb,
            camera_index: int = 0,
            mirror: bool = False,
            provider: Optional[PoseProvider] = None,
            on_error: Optional[Callable[[ProviderError], None]] = None,
            debug_cb: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(daemon=True)
        self.on_frame = on_frame
        self.camera_index = camera_index
        self.mirror = mirror
        self.provider = provider
        self.on_error = on_error
        self._dbg = debug_cb or (lambda *_: None)
        self._stop_evt = threading.Event()
        self._paused = threading.Event()
        self.cap = None

    def run(self):
        try:
            self.cap = cv2.VideoCapture(self.camera_index)
            if not self.cap.isOpened():
                raise ProviderError(f"camera {self.camera_index} not available")
            if self.provider is None:
                self.provider = MediapipePoseProvider()
            self._dbg("camera: opened")

            while not self._stop_evt.is_set():
                if self._paused.is_set():
                    time.sleep(0.05)
                    continue
                ok, frame = self.cap.read()
                if not ok:
                    time.sleep(0.01)
                    continue
                kps = self.provider.estimate(frame)
                ts = time.time() * 1000.0
                if kps is None:
                    continue
                if self.mirror:
                    kps = mirror_keypoints(kps)
                self.on_frame(kps, ts)
        except Exception as e:
            err = e if isinstance(e, ProviderError) else ProviderError(str(e))
            logger.exception("pose pipeline stopped")
            if self.on_error is not None:
                self.on_error(err)
        finally:
            if self.cap is not None:
                self.cap.release()
            close = getattr(self.provider, "close", None)
            if close is not None:
                close()

    def stop(self):
        self._stop_evt.set()

    def pause(self):
        self._paused.set()

    def resume(self):
        self._paused.clear()
