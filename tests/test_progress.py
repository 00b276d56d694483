from __future__ import annotations

from blendchunk.models import ProgressSnapshot
from blendchunk.progress import PROG_STACK_SIZE, ProgressThrottle


def test_forwards_every_nth_report():
    seen = []
    throttle = ProgressThrottle(seen.append)
    sent = [throttle.report(ProgressSnapshot(i, 0)) for i in range(7)]

    assert PROG_STACK_SIZE == 3
    assert sent == [True, False, False, True, False, False, True]
    assert [s.frames_rendered for s in seen] == [0, 3, 6]


def test_forced_report_always_sent():
    seen = []
    throttle = ProgressThrottle(seen.append, every=100)
    throttle.report(ProgressSnapshot(1, 0))
    throttle.report(ProgressSnapshot(2, 0))
    assert throttle.report(ProgressSnapshot(3, 1), force=True)
    assert [s.frames_rendered for s in seen] == [1, 3]


def test_every_below_one_sends_all():
    seen = []
    throttle = ProgressThrottle(seen.append, every=0)
    for i in range(4):
        throttle.report(ProgressSnapshot(i, 0))
    assert len(seen) == 4
