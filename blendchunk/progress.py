from __future__ import annotations

import threading
from typing import Callable

from .models import ProgressSnapshot

# forward every Nth report
PROG_STACK_SIZE = 3


class ProgressThrottle:
    """Forward only every Nth progress report. The first report and forced reports always go through."""

    def __init__(self, callback: Callable[[ProgressSnapshot], None], every: int = PROG_STACK_SIZE):
        self.callback = callback
        self.every = max(1, int(every))
        self._count = 0
        self._lock = threading.Lock()

    def report(self, snapshot: ProgressSnapshot, force: bool = False) -> bool:
        with self._lock:
            send = force or self._count % self.every == 0
            self._count += 1
        if send:
            self.callback(snapshot)
        return send
