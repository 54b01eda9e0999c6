from __future__ import annotations
from typing import List

import pytest

from formcoach.batch.frames import FramePoseData
from poses import SQUAT_REP, frames_for, squat_pose


@pytest.fixture
def squat_frames() -> List[FramePoseData]:
    return frames_for([squat_pose(a) for a in SQUAT_REP])
