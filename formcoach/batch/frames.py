from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Mapping, Optional

import cv2

from formcoach.common.errors import ProviderError
from formcoach.counter.keypoints import Keypoint, keypoints_from_dicts, keypoints_to_dicts, mean_score
from formcoach.counter.pipeline import PoseProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FramePoseData:
    frame_index: int
    timestamp_ms: float
    keypoints: Optional[List[Keypoint]]
    confidence: float = 0.0

    @property
    def has_pose(self) -> bool:
        return self.keypoints is not None

    def to_dict(self) -> dict:
        return {
            "frame_index": self.frame_index,
            "timestamp_ms": self.timestamp_ms,
            "keypoints": keypoints_to_dicts(self.keypoints) if self.keypoints is not None else None,
            "confidence": self.confidence,
        }


def frame_from_dict(item: Mapping[str, Any]) -> FramePoseData:
    kps = item.get("keypoints")
    keypoints = keypoints_from_dicts(kps) if kps else None
    conf = item.get("confidence")
    if conf is None:
        conf = mean_score(keypoints) if keypoints else 0.0
    return FramePoseData(
        frame_index=int(item["frame_index"]),
        timestamp_ms=float(item["timestamp_ms"]),
        keypoints=keypoints,
        confidence=float(conf),
    )


def frames_from_dicts(items: Iterable[Mapping[str, Any]]) -> List[FramePoseData]:
    return [frame_from_dict(it) for it in items]


def pose_frames(frames: Iterable[FramePoseData]) -> List[FramePoseData]:
    return [f for f in frames if f.keypoints is not None]


def read_video_frames(
    path: str,
    provider: PoseProvider,
    sample_fps: Optional[float] = None,
) -> Iterator[FramePoseData]:
    """
    Decode a video file with OpenCV and run the provider on each (sampled) frame.

    Timestamps come from the container position when available, otherwise
    from the frame index and the stream frame rate.
    """
    cap = cv2.VideoCapture(path)
    if not cap.isOpened():
        raise ProviderError(f"cannot open video {path!r}")
    try:
        fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
        step = max(1, int(round(fps / sample_fps))) if sample_fps else 1
        logger.info("reading %s at %.1f fps (every %d frame(s))", path, fps, step)
        idx = 0
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            if idx % step == 0:
                pos = cap.get(cv2.CAP_PROP_POS_MSEC)
                ts = pos if pos and pos > 0 else idx * 1000.0 / fps
                kps = provider.estimate(frame)
                yield FramePoseData(
                    frame_index=idx,
                    timestamp_ms=float(ts),
                    keypoints=kps,
                    confidence=mean_score(kps) if kps else 0.0,
                )
            idx += 1
    finally:
        cap.release()
