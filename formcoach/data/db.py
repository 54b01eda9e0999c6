from __future__ import annotations
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union

from formcoach.common.errors import StoreClosedError

SCHEMA = r"""
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS sessions (
  id TEXT PRIMARY KEY,
  exercise TEXT NOT NULL,
  started_at REAL NOT NULL,
  stopped_at REAL,
  target_reps INTEGER,
  total_reps INTEGER,
  rom_summary_json TEXT,
  notes TEXT
);

CREATE TABLE IF NOT EXISTS reps (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id TEXT NOT NULL,
  rep_index INTEGER NOT NULL,
  start_ts REAL NOT NULL,
  end_ts REAL NOT NULL,
  duration_ms REAL NOT NULL,
  score INTEGER NOT NULL,
  worst_score INTEGER,
  rom_deg REAL,
  eccentric_ms REAL,
  concentric_ms REAL,
  tempo_ratio REAL,
  FOREIGN KEY(session_id) REFERENCES sessions(id)
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id TEXT NOT NULL,
  t REAL NOT NULL,
  type TEXT NOT NULL,
  rep_count INTEGER NOT NULL,
  payload_json TEXT,
  FOREIGN KEY(session_id) REFERENCES sessions(id)
);
"""


class SessionStore:
    """sqlite persistence for coaching sessions. Call open() before use, or use it as a context manager."""

    def __init__(self, path: Union[str, Path] = "./formcoach.db"):
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "SessionStore":
        if self._conn is None:
            target = self.path.as_posix()
            if target != ":memory:":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            # the camera pipeline writes from its own thread
            self._conn = sqlite3.connect(target, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys=ON;")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SessionStore":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._conn is None:
            raise StoreClosedError(f"session store {self.path} is not open")
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
        return cur

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        if self._conn is None:
            raise StoreClosedError(f"session store {self.path} is not open")
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Session-level writes

    def insert_session(self, session_id: str, exercise: str, started_at: float, target_reps: Optional[int] = None):
        self._execute(
            "INSERT OR REPLACE INTO sessions (id, exercise, started_at, target_reps) VALUES (?,?,?,?)",
            (session_id, exercise, started_at, target_reps),
        )

    def stop_session(
        self,
        session_id: str,
        stopped_at: float,
        total_reps: Optional[int] = None,
        rom_summary: Optional[Mapping[str, Any]] = None,
    ):
        self._execute(
            "UPDATE sessions SET stopped_at=?, total_reps=?, rom_summary_json=? WHERE id=?",
            (stopped_at, total_reps, json.dumps(rom_summary) if rom_summary is not None else None, session_id),
        )

    # Event & rep writes

    def insert_event(self, session_id: str, t: float, type: str, rep_count: int, payload: Optional[Mapping[str, Any]] = None):
        self._execute(
            "INSERT INTO events (session_id, t, type, rep_count, payload_json) VALUES (?,?,?,?,?)",
            (session_id, t, type, rep_count, json.dumps(payload) if payload is not None else None),
        )

    def insert_rep(
        self,
        session_id: str,
        rep_index: int,
        start_ts: float,
        end_ts: float,
        duration_ms: float,
        score: int,
        worst_score: Optional[int] = None,
        rom_deg: Optional[float] = None,
        eccentric_ms: Optional[float] = None,
        concentric_ms: Optional[float] = None,
        tempo_ratio: Optional[float] = None,
    ):
        self._execute(
            """
            INSERT INTO reps (
              session_id, rep_index, start_ts, end_ts, duration_ms, score, worst_score,
              rom_deg, eccentric_ms, concentric_ms, tempo_ratio
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                session_id,
                rep_index,
                start_ts,
                end_ts,
                duration_ms,
                score,
                worst_score,
                rom_deg,
                eccentric_ms,
                concentric_ms,
                tempo_ratio,
            ),
        )

    # Reads

    def fetch_session(self, session_id: str) -> Optional[dict]:
        rows = self._query("SELECT * FROM sessions WHERE id=?", (session_id,))
        if not rows:
            return None
        out = dict(rows[0])
        raw = out.pop("rom_summary_json")
        out["rom_summary"] = json.loads(raw) if raw else None
        return out

    def fetch_reps(self, session_id: str) -> List[dict]:
        rows = self._query("SELECT * FROM reps WHERE session_id=? ORDER BY rep_index", (session_id,))
        return [dict(r) for r in rows]

    def fetch_events(self, session_id: str, type: Optional[str] = None) -> List[dict]:
        if type is None:
            rows = self._query("SELECT * FROM events WHERE session_id=? ORDER BY id", (session_id,))
        else:
            rows = self._query(
                "SELECT * FROM events WHERE session_id=? AND type=? ORDER BY id", (session_id, type)
            )
        out = []
        for r in rows:
            d = dict(r)
            raw = d.pop("payload_json")
            d["payload"] = json.loads(raw) if raw else None
            out.append(d)
        return out
