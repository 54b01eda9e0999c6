from __future__ import annotations
import pytest

from formcoach.common.errors import ConfigurationError
from formcoach.counter.phases import CycleConfig, initial_cycle, step_cycle

CFG = CycleConfig(top=160.0, bottom=110.0)


def run(angles, cfg=CFG):
    st = initial_cycle(cfg)
    steps = []
    for a in angles:
        s = step_cycle(st, a, cfg)
        st = s.state
        steps.append(s)
    return steps


def test_full_cycle_counts_once():
    steps = run([170, 150, 130, 100, 100, 130, 150, 170])
    phases = [s.state.phase for s in steps]
    assert phases == ["standing", "descending", "descending", "bottom", "bottom", "ascending", "ascending", "standing"]
    assert [s.rep_completed for s in steps].count(True) == 1
    assert steps[-1].state.rep_count == 1


def test_return_without_bottom_is_partial():
    steps = run([170, 150, 130, 150, 170])
    assert steps[-1].partial
    assert steps[-1].state.rep_count == 0


def test_bottom_needs_confirmation_without_margin():
    # 108 is inside the bottom zone but not past the margin
    steps = run([170, 140, 108, 108])
    assert steps[2].state.phase == "descending"
    assert steps[3].state.phase == "bottom"


def test_jitter_inside_deadband_keeps_phase():
    steps = run([170, 150, 150.5, 149.8])
    assert {s.state.phase for s in steps[1:]} == {"descending"}


def test_once_bottom_reached_only_ascending():
    steps = run([170, 140, 100, 120, 115])
    assert steps[3].state.phase == "ascending"
    assert steps[4].state.phase == "ascending"


def test_starts_at_bottom():
    cfg = CycleConfig(top=155.0, bottom=120.0, starts_at_bottom=True)
    assert initial_cycle(cfg).bottom_reached
    steps = run([100, 130, 150, 170], cfg)
    assert steps[-1].rep_completed


def test_debug_trace():
    lines = []
    st = initial_cycle(CFG)
    st = step_cycle(st, 170, CFG).state
    step_cycle(st, 150, CFG, debug_cb=lines.append)
    assert lines == ["state→descending"]


def test_config_validation():
    with pytest.raises(ConfigurationError):
        CycleConfig(top=100.0, bottom=120.0)
