"""
Run Approval State Machine
Consumes polled run snapshots and advances one PollSession through
planning, policy checks, human override and apply.

The provider owns the authoritative run; the session only caches the
latest snapshot. Once a session reaches a terminal state it accepts no
further transitions, and every transition is written to the audit trail.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from approval.audit import AuditRecorder
from approval.errors import InvalidOverride, MalformedSnapshot
from approval.log import get_logger
from approval.policy import Classification, classify
from provider_sdk.models import OverrideDecision, PolicyCheck, Run, RunStatus

logger = get_logger("state_machine")


# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

APPROVAL_SESSION_TIMEOUT_SECONDS = int(
    os.environ.get("APPROVAL_SESSION_TIMEOUT_SECONDS", "3600")
)


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

class SessionState(str, Enum):
    CREATED = "created"
    PLANNING = "planning"
    POLICY_CHECKING = "policy_checking"
    READY = "ready"
    AWAITING_DECISION = "awaiting_decision"
    HARD_BLOCKED = "hard_blocked"
    OVERRIDE_GRANTED = "override_granted"
    APPLY_QUEUED = "apply_queued"
    APPLYING = "applying"
    APPLIED = "applied"
    APPLY_FAILED = "apply_failed"
    PLAN_FAILED = "plan_failed"
    DISCARDED = "discarded"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({
    SessionState.HARD_BLOCKED,
    SessionState.APPLIED,
    SessionState.APPLY_FAILED,
    SessionState.PLAN_FAILED,
    SessionState.DISCARDED,
    SessionState.CANCELED,
    SessionState.TIMED_OUT,
})

# States in which the orchestrator stops polling to consult the Apply Gate.
DECISION_STATES = frozenset({SessionState.READY, SessionState.OVERRIDE_GRANTED})

# Provider statuses reported once the plan has finished.
_PLAN_COMPLETE = frozenset({
    RunStatus.POLICY_CHECKING,
    RunStatus.POLICY_CHECKED,
    RunStatus.POLICY_SOFT_FAILED,
    RunStatus.POLICY_OVERRIDE,
    RunStatus.APPLY_QUEUED,
    RunStatus.APPLYING,
    RunStatus.APPLIED,
})

# Provider statuses reported once policy evaluation has settled.
_POLICY_SETTLED = frozenset({
    RunStatus.POLICY_CHECKED,
    RunStatus.POLICY_SOFT_FAILED,
    RunStatus.POLICY_OVERRIDE,
    RunStatus.APPLY_QUEUED,
    RunStatus.APPLYING,
    RunStatus.APPLIED,
    RunStatus.ERRORED,
})

_APPLY_STARTED = frozenset({
    RunStatus.APPLY_QUEUED,
    RunStatus.APPLYING,
    RunStatus.APPLIED,
})


# ---------------------------------------------------------------------------
# Snapshot + session
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunSnapshot:
    """One polled view of a run and its policy checks."""
    run: Run
    policy_results: frozenset[PolicyCheck]
    observed_at: datetime

    @property
    def classification(self) -> Classification:
        return classify(self.policy_results)


@dataclass
class PollSession:
    deadline: datetime
    run_id: Optional[str] = None
    state: SessionState = SessionState.CREATED
    attempts: int = 0
    snapshot: Optional[RunSnapshot] = None
    last_observed_at: Optional[datetime] = None
    override: Optional[OverrideDecision] = None
    override_detected: bool = False
    apply_requested: bool = False

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def run(self) -> Optional[Run]:
        return self.snapshot.run if self.snapshot else None

    @property
    def classification(self) -> Optional[Classification]:
        return self.snapshot.classification if self.snapshot else None

    def record_override(self, decision: OverrideDecision) -> None:
        """Store the run's single override decision."""
        if self.override is not None:
            raise InvalidOverride(
                f"Run {self.run_id} already has an override recorded "
                f"by {self.override.actor}"
            )
        self.override = decision


def new_session(
    now: datetime,
    timeout_seconds: int = APPROVAL_SESSION_TIMEOUT_SECONDS,
) -> PollSession:
    return PollSession(deadline=now + timedelta(seconds=timeout_seconds))


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------

_Step = tuple[SessionState, Optional[str], Optional[str]]


class RunApprovalMachine:
    """
    Transition logic for one PollSession.

    observe() may advance several states from a single snapshot; each
    step is recorded separately. Snapshots older than the last one
    applied, and anything fed after termination, are ignored.
    """

    def __init__(
        self,
        session: PollSession,
        recorder: AuditRecorder,
    ):
        self.session = session
        self.recorder = recorder

    @property
    def state(self) -> SessionState:
        return self.session.state

    # -- Explicit transitions ------------------------------------------------

    def start(self, run_id: str) -> SessionState:
        """CREATED -> PLANNING once the provider has issued a run id."""
        if self.session.state != SessionState.CREATED:
            raise ValueError(f"Session already started (state={self.session.state.value})")
        self.session.run_id = run_id
        self._transition(SessionState.PLANNING)
        return self.session.state

    def expire(self, now: datetime) -> bool:
        """Move to TIMED_OUT when the local deadline has passed."""
        if self.session.terminal or now < self.session.deadline:
            return False
        self._transition(SessionState.TIMED_OUT, justification="local deadline exceeded")
        return True

    def cancel(self, actor: Optional[str] = None, reason: Optional[str] = None) -> bool:
        """Record an external abort. Never touches the provider run."""
        if self.session.terminal:
            return False
        self._transition(SessionState.CANCELED, actor=actor, justification=reason)
        return True

    # -- Snapshot-driven transitions -------------------------------------------

    def observe(self, snapshot: RunSnapshot) -> SessionState:
        session = self.session
        if session.terminal:
            logger.debug(
                "snapshot ignored after termination",
                extra={"state": session.state.value},
            )
            return session.state
        if session.state == SessionState.CREATED:
            raise MalformedSnapshot("Snapshot observed before the session was started")

        if session.last_observed_at is not None and snapshot.observed_at < session.last_observed_at:
            logger.info(
                "stale snapshot discarded",
                extra={
                    "observed_at": snapshot.observed_at,
                    "last_observed_at": session.last_observed_at,
                },
            )
            return session.state

        self._validate(snapshot)
        session.snapshot = snapshot
        session.last_observed_at = snapshot.observed_at

        while not session.terminal:
            step = self._next(snapshot)
            if step is None:
                break
            to_state, actor, justification = step
            if to_state == SessionState.OVERRIDE_GRANTED:
                self._capture_override(snapshot.run)
            self._transition(to_state, actor=actor, justification=justification)
        return session.state

    def _validate(self, snapshot: RunSnapshot) -> None:
        run = snapshot.run
        if run.id != self.session.run_id:
            raise MalformedSnapshot(
                f"Snapshot for run {run.id} fed to session for run {self.session.run_id}"
            )
        cached = self.session.run
        if (
            cached is not None
            and cached.plan_summary is not None
            and run.plan_summary != cached.plan_summary
        ):
            raise MalformedSnapshot(f"Plan summary of run {run.id} changed after it was set")

    def _capture_override(self, run: Run) -> None:
        self.session.override_detected = True
        if run.override is not None and self.session.override is None:
            self.session.record_override(run.override)

    def _next(self, snapshot: RunSnapshot) -> Optional[_Step]:
        run = snapshot.run
        status = run.status
        state = self.session.state

        # Discard / cancel win over everything, including a recorded override.
        if status == RunStatus.DISCARDED:
            return SessionState.DISCARDED, None, "run discarded at provider"
        if status in (RunStatus.CANCELED, RunStatus.FORCE_CANCELED):
            return SessionState.CANCELED, None, "run canceled at provider"

        if state == SessionState.PLANNING:
            if status in _PLAN_COMPLETE or run.plan_summary is not None:
                return SessionState.POLICY_CHECKING, None, None
            if status == RunStatus.ERRORED:
                return SessionState.PLAN_FAILED, None, "plan errored"
            return None

        if state == SessionState.POLICY_CHECKING:
            if status not in _POLICY_SETTLED:
                return None
            verdict = snapshot.classification
            if verdict == Classification.HARD_FAIL:
                return SessionState.HARD_BLOCKED, None, "hard-mandatory policy failed"
            if status == RunStatus.ERRORED:
                return SessionState.PLAN_FAILED, None, "run errored during policy checks"
            if verdict == Classification.SOFT_FAIL:
                return SessionState.AWAITING_DECISION, None, None
            return SessionState.READY, None, None

        if state == SessionState.AWAITING_DECISION:
            if run.override is not None:
                return (
                    SessionState.OVERRIDE_GRANTED,
                    run.override.actor,
                    run.override.justification,
                )
            if status == RunStatus.POLICY_OVERRIDE or status in _APPLY_STARTED:
                return SessionState.OVERRIDE_GRANTED, None, None
            if status == RunStatus.ERRORED:
                return SessionState.PLAN_FAILED, None, "run errored while awaiting decision"
            return None

        if state in (SessionState.READY, SessionState.OVERRIDE_GRANTED):
            if status in _APPLY_STARTED:
                return SessionState.APPLY_QUEUED, None, None
            if status == RunStatus.ERRORED:
                if self.session.apply_requested:
                    return SessionState.APPLY_FAILED, None, "apply errored"
                return SessionState.PLAN_FAILED, None, "run errored before apply"
            return None

        if state == SessionState.APPLY_QUEUED:
            if status in (RunStatus.APPLYING, RunStatus.APPLIED):
                return SessionState.APPLYING, None, None
            if status == RunStatus.ERRORED:
                return SessionState.APPLY_FAILED, None, "apply errored"
            return None

        if state == SessionState.APPLYING:
            if status == RunStatus.APPLIED:
                return SessionState.APPLIED, None, None
            if status == RunStatus.ERRORED:
                return SessionState.APPLY_FAILED, None, "apply errored"
            return None

        return None

    def _transition(
        self,
        to_state: SessionState,
        actor: Optional[str] = None,
        justification: Optional[str] = None,
    ) -> None:
        from_state = self.session.state
        self.session.state = to_state
        self.recorder.record(
            run_id=self.session.run_id,
            from_state=from_state.value,
            to_state=to_state.value,
            actor=actor,
            justification=justification,
        )
        logger.info(
            "run transition",
            extra={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "transition_actor": actor,
                "justification": justification,
            },
        )
