"""
Audit Spine Export
Mirrors approval transitions into the tamper-evident audit_events ledger.

Each AuditRecord becomes one APPROVAL_TRANSITION row. The ledger is
append-only; the hash-chaining trigger in PostgreSQL fills event_hash and
previous_event_hash, so concurrent writers can collide on the chain head
and are retried.
"""

from __future__ import annotations

import json
import os
import time
from typing import Any, Iterable

import psycopg2
import psycopg2.errors

from approval.audit import AuditRecord
from approval.log import get_logger

logger = get_logger("audit_spine")

AUDIT_SPINE_DSN = os.environ.get("AUDIT_SPINE_DSN", "")

ACTION_TYPE = "APPROVAL_TRANSITION"
POLICY_VERSION = "1.0.0"
SYSTEM_ACTOR = "system:approval-orchestrator"


class AuditSpineWriter:
    """
    Append-only writer for the audit_events ledger.

    Usable directly as an AuditRecorder listener:
        recorder.subscribe(AuditSpineWriter(dsn).mirror)
    """

    def __init__(self, dsn: str = AUDIT_SPINE_DSN, db_config: dict | None = None):
        if not dsn and not db_config:
            raise ValueError("AuditSpineWriter needs a DSN or db_config")
        self._dsn = dsn
        self._db_config = db_config or {}

    def _connect(self):
        if self._dsn:
            return psycopg2.connect(self._dsn)
        return psycopg2.connect(**self._db_config)

    @staticmethod
    def payload_for(record: AuditRecord) -> dict[str, Any]:
        return {
            "sequence": record.sequence,
            "run_id": record.run_id,
            "from_state": record.from_state,
            "to_state": record.to_state,
            "actor": record.actor,
            "justification": record.justification,
            "recorded_at": record.timestamp.isoformat(),
        }

    def log_record(self, record: AuditRecord, _max_retries: int = 3) -> str:
        """
        Write one transition to the ledger and return the event UUID.

        Retries on UniqueViolation / DeadlockDetected (concurrent inserts
        racing for the same previous_event_hash).
        """
        actor_id = record.actor or SYSTEM_ACTOR
        for attempt in range(_max_retries):
            conn = self._connect()
            try:
                cur = conn.cursor()
                cur.execute(
                    "INSERT INTO audit_events "
                    "(actor_id, action_type, intent_payload, policy_version) "
                    "VALUES (%s, %s, %s, %s) "
                    "RETURNING id",
                    (
                        actor_id,
                        ACTION_TYPE,
                        json.dumps(self.payload_for(record)),
                        POLICY_VERSION,
                    ),
                )
                event_id = str(cur.fetchone()[0])
                conn.commit()
                cur.close()
                return event_id
            except (psycopg2.errors.UniqueViolation, psycopg2.errors.DeadlockDetected):
                conn.rollback()
                if attempt < _max_retries - 1:
                    logger.warning(
                        "audit spine insert conflict, retrying",
                        extra={"attempt": attempt + 1, "sequence": record.sequence},
                    )
                    time.sleep(0.05 * (attempt + 1))
                    continue
                raise
            finally:
                conn.close()
        raise RuntimeError("log_record: exhausted retries")

    def mirror(self, record: AuditRecord) -> None:
        """
        Recorder listener: best-effort log_record.

        A ledger outage is logged and never interrupts the transition or
        the listeners after this one.
        """
        try:
            self.log_record(record)
        except psycopg2.Error as exc:
            logger.warning(
                "audit spine write failed",
                extra={
                    "sequence": record.sequence,
                    "to_state": record.to_state,
                    "error": str(exc).strip(),
                },
            )

    def export(self, records: Iterable[AuditRecord]) -> list[str]:
        """Write a whole trail in order. Returns the event ids."""
        return [self.log_record(record) for record in records]

    def transitions_for_run(self, run_id: str) -> list[dict[str, Any]]:
        """Read back the ledger rows for one run, oldest first. SELECT-only."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, created_at, actor_id, intent_payload "
                "FROM audit_events "
                "WHERE action_type = %s AND intent_payload->>'run_id' = %s "
                "ORDER BY created_at ASC",
                (ACTION_TYPE, run_id),
            )
            rows = cur.fetchall()
            cur.close()
        finally:
            conn.close()

        results = []
        for event_id, created_at, actor_id, payload in rows:
            if isinstance(payload, str):
                payload = json.loads(payload)
            results.append({
                "id": str(event_id),
                "created_at": created_at,
                "actor_id": actor_id,
                "payload": payload,
            })
        return results
