"""
Audit Recorder
Append-only trail of approval state transitions.

Every transition produces exactly one AuditRecord, in transition order.
Records are frozen and never reordered; the trail can be re-read from the
start at any time and yields the same sequence. Listeners are notified
after a record has been committed to the trail.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from pydantic import BaseModel, ConfigDict

from approval.log import get_logger

logger = get_logger("audit")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: datetime
    run_id: Optional[str]
    from_state: str
    to_state: str
    actor: Optional[str] = None
    justification: Optional[str] = None


AuditListener = Callable[[AuditRecord], None]


class AuditRecorder:
    """
    In-memory append-only audit trail for one orchestration context.

    All transitions go through record() so that the state machine, the
    comment poster and the Postgres export share one ordering.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._records: list[AuditRecord] = []
        self._listeners: list[AuditListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: AuditListener) -> None:
        """Register a callback invoked with each new record."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: AuditListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def record(
        self,
        run_id: Optional[str],
        from_state: str,
        to_state: str,
        actor: Optional[str] = None,
        justification: Optional[str] = None,
    ) -> AuditRecord:
        """Append a transition record and return it."""
        with self._lock:
            entry = AuditRecord(
                sequence=len(self._records),
                timestamp=self._clock(),
                run_id=run_id,
                from_state=from_state,
                to_state=to_state,
                actor=actor,
                justification=justification,
            )
            self._records.append(entry)

        logger.debug(
            "audit record appended",
            extra={"sequence": entry.sequence, "to_state": to_state},
        )
        for listener in list(self._listeners):
            listener(entry)
        return entry

    def trail(self, run_id: Optional[str] = None) -> Iterator[AuditRecord]:
        """
        Lazily iterate the records present when iteration starts.

        Records appended mid-iteration are not yielded, so every pass is
        finite. Calling trail() again restarts from the first record.
        """
        end = len(self._records)
        for index in range(end):
            entry = self._records[index]
            if run_id is None or entry.run_id == run_id:
                yield entry

    def __iter__(self) -> Iterator[AuditRecord]:
        return self.trail()

    def __len__(self) -> int:
        return len(self._records)
