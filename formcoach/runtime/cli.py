# formcoach/runtime/cli.py
from __future__ import annotations
import argparse
import json
import logging
import sys
from typing import List, Optional

from formcoach.batch.detector import detect_exercise
from formcoach.batch.frames import read_video_frames
from formcoach.batch.rep_segmenter import RepAnalysisConfig, analyze_video_reps
from formcoach.common.config import configure_logging
from formcoach.common.errors import FormCoachError
from formcoach.counter.pipeline import MediapipePoseProvider
from formcoach.exercises.registry import exercise_names

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="formcoach", description="Exercise form analysis over pose keypoints")
    p.add_argument("--log-level", default=None, help="overrides FORMCOACH_LOG_LEVEL")
    sub = p.add_subparsers(dest="command", required=True)

    a = sub.add_parser("analyze", help="count and score reps in a video")
    a.add_argument("video")
    a.add_argument("--exercise", choices=exercise_names(), default=None, help="skip detection")
    a.add_argument("--fps", type=float, default=None, help="sample rate (default: every frame)")

    d = sub.add_parser("detect", help="guess the exercise in a video")
    d.add_argument("video")
    d.add_argument("--fps", type=float, default=None)
    return p


def _read(path: str, fps: Optional[float]):
    provider = MediapipePoseProvider()
    try:
        return list(read_video_frames(path, provider, sample_fps=fps))
    finally:
        provider.close()


def run(args: argparse.Namespace) -> int:
    frames = _read(args.video, args.fps)
    logger.info("%d frames read from %s", len(frames), args.video)
    if args.command == "detect":
        out = detect_exercise(frames).to_dict()
    else:
        out = analyze_video_reps(frames, RepAnalysisConfig(exercise=args.exercise)).to_dict()
    print(json.dumps(out, indent=2, ensure_ascii=False), flush=True)
    return 0 if out.get("status") == "ok" else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper() if args.log_level else None)
    try:
        return run(args)
    except FormCoachError as e:
        print(f"error: {e}", file=sys.stderr, flush=True)
        return 2


if __name__ == "__main__":
    sys.exit(main())
