from __future__ import annotations
import asyncio
import json
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Literal, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from formcoach.batch.detector import DetectionConfig, detect_exercise
from formcoach.batch.frames import frames_from_dicts
from formcoach.batch.rep_segmenter import RepAnalysisConfig, analyze_video_reps
from formcoach.common.config import SETTINGS, configure_logging
from formcoach.common.errors import ConfigurationError, UnknownExerciseError
from formcoach.common.events import EventType
from formcoach.counter.session import CoachSessionManager
from formcoach.data.db import SessionStore
from formcoach.exercises.registry import exercise_names

logger = logging.getLogger(__name__)

MANAGER = CoachSessionManager(store=SessionStore(SETTINGS.db_path))
WS_CLIENTS: Set[WebSocket] = set()
_LOOP: Optional[asyncio.AbstractEventLoop] = None
# set while the app shuts down; batch analyses poll it and stop early
_SHUTDOWN = threading.Event()


def ACTIVE_MANAGER() -> CoachSessionManager:
    return MANAGER


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _LOOP
    configure_logging()
    _LOOP = asyncio.get_running_loop()
    _SHUTDOWN.clear()
    if MANAGER.store is not None:
        MANAGER.store.open()
    try:
        yield
    finally:
        _SHUTDOWN.set()
        if MANAGER.active_id is not None:
            MANAGER.stop(MANAGER.active_id)
        if MANAGER.store is not None:
            MANAGER.store.close()
        _LOOP = None


app = FastAPI(title="formcoach", lifespan=lifespan)


# let the manager emit events to all WS clients
def _sink(ev: dict):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # camera thread: hand the send over to the server loop
        if _LOOP is not None:
            asyncio.run_coroutine_threadsafe(broadcast(ev), _LOOP)
        return
    loop.create_task(broadcast(ev))


MANAGER.set_event_sink(_sink)


class KeypointIn(BaseModel):
    x: float
    y: float
    z: Optional[float] = None
    score: Optional[float] = None
    visibility: Optional[float] = None


class FrameIn(BaseModel):
    frame_index: int
    timestamp_ms: float
    keypoints: Optional[List[KeypointIn]] = None
    confidence: Optional[float] = None


class StartIn(BaseModel):
    exercise: str = Field(..., description="Exercise to coach")
    target_reps: Optional[int] = Field(None, ge=1, description="Optional target reps")
    source: Optional[Literal["camera", "web"]] = Field(None, description="Frame source; default follows websocket state")


class StopIn(BaseModel):
    session_id: Optional[str] = Field(None, description="Explicit session ID; default to active")


class DetectIn(BaseModel):
    frames: List[FrameIn]
    confidence_threshold: float = 0.7
    frames_to_analyze: int = 30
    timeout_ms: float = 5000.0


class AnalyzeIn(BaseModel):
    frames: List[FrameIn]
    exercise: Optional[str] = None
    phase_weights: Dict[str, float] = Field(default_factory=dict)
    min_rep_ms: float = 500.0
    max_rep_ms: float = 10000.0


def _frames(items: List[FrameIn]):
    return frames_from_dicts(f.model_dump(exclude_none=True) for f in items)


@app.get("/health")
async def health():
    return {"status": "ok", "exercises": exercise_names()}


@app.get("/sessions/current")
async def current():
    m = ACTIVE_MANAGER()
    st = m.status()
    return JSONResponse({
        "state": st.state,
        "count": st.count,
        "session_id": m.active_id,
        "exercise": st.exercise,
        "target_reps": m.target_reps,
        "web_mode": m.web_mode,
    })


@app.post("/sessions/start")
async def start(body: StartIn):
    m = ACTIVE_MANAGER()
    if body.source is not None:
        m.set_web_mode(body.source == "web")
    try:
        sid, status = m.start(exercise=body.exercise, target_reps=body.target_reps)
    except UnknownExerciseError as e:
        raise HTTPException(status_code=404, detail=f"Exercise '{e.exercise}' not found. Available: {exercise_names()}")
    return {"session_id": sid, "status": status}


@app.post("/sessions/stop")
async def stop(body: Optional[StopIn] = None):
    m = ACTIVE_MANAGER()
    sid = (body.session_id if body else None) or m.active_id
    if sid is None:
        return JSONResponse({"stopped": False, "session_id": None})
    summary = m.stop(sid)
    return JSONResponse({
        "stopped": True,
        "session_id": summary.session_id,
        "total_reps": summary.total_reps,
        "rom_summary": summary.rom_summary,
    })


@app.post("/analyze/detect")
async def detect(body: DetectIn):
    try:
        cfg = DetectionConfig(
            frames_to_analyze=body.frames_to_analyze,
            confidence_threshold=body.confidence_threshold,
            timeout_ms=body.timeout_ms,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    out = await asyncio.to_thread(detect_exercise, _frames(body.frames), cfg, _SHUTDOWN.is_set)
    return out.to_dict()


@app.post("/analyze/reps")
async def analyze_reps(body: AnalyzeIn):
    try:
        cfg = RepAnalysisConfig(
            exercise=body.exercise,
            phase_weights=body.phase_weights,
            min_rep_ms=body.min_rep_ms,
            max_rep_ms=body.max_rep_ms,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    try:
        out = await asyncio.to_thread(analyze_video_reps, _frames(body.frames), cfg, _SHUTDOWN.is_set)
    except UnknownExerciseError as e:
        raise HTTPException(status_code=404, detail=f"Exercise '{e.exercise}' not found. Available: {exercise_names()}")
    return out.to_dict()


@app.websocket("/ws/keypoints")
async def ws_keypoints(ws: WebSocket):
    await ws.accept()
    WS_CLIENTS.add(ws)
    ACTIVE_MANAGER().set_web_mode(True)
    await broadcast({"type": EventType.TRACE.value, "msg": "ws: client connected"})
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await ws.send_text(json.dumps({"type": EventType.TRACE.value, "msg": "ws: bad json"}))
                continue
            if not isinstance(data, dict) or data.get("type") != "keypoints":
                continue
            kps = data.get("keypoints")
            if not kps or not isinstance(kps, list):
                continue
            try:
                ts = float(data.get("ts", time.time() * 1000.0))
            except (TypeError, ValueError):
                await ws.send_text(json.dumps({"type": EventType.TRACE.value, "msg": "ws: bad ts"}))
                continue
            ACTIVE_MANAGER().push_keypoints(kps, ts)
    except WebSocketDisconnect:
        logger.info("ws client disconnected")
    finally:
        WS_CLIENTS.discard(ws)
        if not WS_CLIENTS:
            ACTIVE_MANAGER().set_web_mode(False)
        await broadcast({"type": EventType.TRACE.value, "msg": "ws closed"})


async def broadcast(obj: dict):
    dead = []
    text = json.dumps(obj)
    for ws in list(WS_CLIENTS):
        try:
            await ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("dropping ws client: %s", e)
            dead.append(ws)
    for d in dead:
        WS_CLIENTS.discard(d)
