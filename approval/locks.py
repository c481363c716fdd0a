"""
Per-run mutual exclusion and the orchestration context.

Only one poll session may drive a given run at a time. The registry is
carried in an explicit OrchestrationContext rather than module state, so
independent workspaces can run their own sessions side by side.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from approval.audit import AuditRecorder
from approval.errors import SessionBusy


class RunLockRegistry:
    """Non-blocking per-run locks. acquire() fails fast if already held."""

    def __init__(self):
        self._held: set[str] = set()
        self._guard = threading.Lock()

    def acquire(self, run_id: str) -> None:
        with self._guard:
            if run_id in self._held:
                raise SessionBusy(run_id)
            self._held.add(run_id)

    def release(self, run_id: str) -> None:
        with self._guard:
            self._held.discard(run_id)

    def held(self, run_id: str) -> bool:
        with self._guard:
            return run_id in self._held


@dataclass
class OrchestrationContext:
    """Shared state for every session in one workspace."""
    workspace: str = "default"
    locks: RunLockRegistry = field(default_factory=RunLockRegistry)
    recorder: AuditRecorder = field(default_factory=AuditRecorder)
