from __future__ import annotations
import time
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from formcoach.counter.keypoints import Keypoint, NUM_KEYPOINTS, keypoint_from_dict, mirror_keypoints
from formcoach.counter.pipeline import FrameCb


class WebKeypointPipeline:
    """
    Passive pipeline fed by a browser that runs pose estimation itself.
    No camera, no threads: call push_keypoints(keypoints, ts).
    """
    def __init__(
        self,
        on_frame: FrameCb,
        mirror: bool = False,
        debug_cb: Optional[Callable[[str], None]] = None,
    ):
        self.on_frame = on_frame
        self.mirror = mirror
        self.debug_cb = debug_cb
        self._running = True
        self.frames = 0
        self.dropped = 0

    # API parity with PosePipeline
    def start(self):
        self._running = True

    def stop(self):
        self._running = False

    def pause(self):
        self._running = False

    def resume(self):
        self._running = True

    def join(self, timeout: Optional[float] = None):
        return

    def push_keypoints(
        self,
        keypoints: Sequence[Union[Keypoint, Mapping[str, Any]]],
        ts: Optional[float] = None,
    ) -> bool:
        """Feed one pose (timestamp in ms). Returns False when the frame was dropped."""
        if not self._running:
            return False
        if len(keypoints) < NUM_KEYPOINTS:
            self.dropped += 1
            if self.debug_cb:
                self.debug_cb(f"drop: {len(keypoints)} keypoints")
            return False
        try:
            kps = [k if isinstance(k, Keypoint) else keypoint_from_dict(k) for k in keypoints]
            t = float(ts) if ts is not None else time.time() * 1000.0
        except (KeyError, TypeError, ValueError) as e:
            self.dropped += 1
            if self.debug_cb:
                self.debug_cb(f"drop: bad frame ({e!r})")
            return False
        if self.mirror:
            kps = mirror_keypoints(kps)
        self.frames += 1
        self.on_frame(kps, t)
        return True
