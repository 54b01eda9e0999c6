from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    db_path: Path
    locale: str
    min_keypoint_score: float
    mirror: bool
    log_level: str
    camera_index: int


def load_settings() -> Settings:
    """Read settings from the environment (and .env) at call time."""
    return Settings(
        db_path=Path(os.getenv("FORMCOACH_DB_PATH", "./formcoach.db")),
        locale=os.getenv("FORMCOACH_LOCALE", "en"),
        min_keypoint_score=float(os.getenv("FORMCOACH_MIN_KEYPOINT_SCORE", "0.5")),
        mirror=_env_bool("FORMCOACH_MIRROR", False),
        log_level=os.getenv("FORMCOACH_LOG_LEVEL", "INFO").upper(),
        camera_index=int(os.getenv("FORMCOACH_CAMERA_INDEX", "0")),
    )


SETTINGS = load_settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or SETTINGS.log_level), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
