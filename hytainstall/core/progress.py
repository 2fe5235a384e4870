# hytainstall/core/progress.py
"""
Progress / status surface handed into every long-running operation.

Callbacks are fire-and-forget and run on whichever task finished the
I/O; a UI consumer has to marshal them onto its own thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from hytainstall.core.models import InstallPhase

INDETERMINATE = -1.0


@dataclass
class Reporter:
    on_progress: Optional[Callable[[float], None]] = None
    on_status: Optional[Callable[[str], None]] = None
    on_phase: Optional[Callable[[InstallPhase], None]] = None

    def progress(self, value: float) -> None:
        if self.on_progress is not None:
            self.on_progress(value if value == INDETERMINATE else max(0.0, min(value, 100.0)))

    def status(self, text: str) -> None:
        if self.on_status is not None:
            self.on_status(text)

    def phase(self, phase: InstallPhase) -> None:
        if self.on_phase is not None:
            self.on_phase(phase)


SILENT = Reporter()
