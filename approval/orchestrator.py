"""
Run Orchestrator
Drives one provider run from trigger to a terminal state.

Flow:
  1. Create the run (or resume an existing run id) and take the per-run lock.
  2. Poll run status and policy checks on a fixed interval, feeding each
     snapshot to the state machine, until the run is ready for apply or
     terminal. Transient provider failures are retried with backoff.
  3. Ask the Apply Gate; if eligible, trigger the apply and keep polling
     until APPLIED or APPLY_FAILED.

A local deadline ends the session in TIMED_OUT; an operator abort ends it
in CANCELED. Neither touches the provider run.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel

from approval.apply_gate import GateDecision, check_eligible
from approval.audit import AuditRecord
from approval.errors import InvalidOverride, ProviderError, ProviderUnavailable
from approval.locks import OrchestrationContext
from approval.log import LogContext, get_logger
from approval.state_machine import (
    APPROVAL_SESSION_TIMEOUT_SECONDS,
    DECISION_STATES,
    TERMINAL_STATES,
    RunApprovalMachine,
    RunSnapshot,
    SessionState,
    new_session,
)
from provider_sdk.client import RunProviderClient
from provider_sdk.models import OverrideDecision

logger = get_logger("orchestrator")


# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

APPROVAL_POLL_INTERVAL_SECONDS = float(
    os.environ.get("APPROVAL_POLL_INTERVAL_SECONDS", "30")
)
APPROVAL_MAX_POLL_RETRIES = int(os.environ.get("APPROVAL_MAX_POLL_RETRIES", "3"))
APPROVAL_RETRY_BACKOFF_SECONDS = float(
    os.environ.get("APPROVAL_RETRY_BACKOFF_SECONDS", "2")
)
APPROVAL_POST_COMMENTS = os.environ.get(
    "APPROVAL_POST_COMMENTS", "true"
).lower() in ("1", "true", "yes")


@dataclass
class OrchestratorConfig:
    """Tunables for a single orchestrated run."""
    poll_interval_seconds: float = APPROVAL_POLL_INTERVAL_SECONDS
    session_timeout_seconds: int = APPROVAL_SESSION_TIMEOUT_SECONDS
    max_poll_retries: int = APPROVAL_MAX_POLL_RETRIES
    retry_backoff_seconds: float = APPROVAL_RETRY_BACKOFF_SECONDS
    post_comments: bool = APPROVAL_POST_COMMENTS
    apply_comment: str = "Apply triggered by approval orchestrator"


# States worth an audit comment on the provider run.
_COMMENTED_STATES = frozenset(
    s.value for s in TERMINAL_STATES | {SessionState.OVERRIDE_GRANTED}
)

_APPLY_STATUS = {
    SessionState.APPLIED: "applied",
    SessionState.APPLY_FAILED: "errored",
    SessionState.APPLY_QUEUED: "pending",
    SessionState.APPLYING: "pending",
}


class _PollCanceled(Exception):
    """Raised inside the retry loop once an operator abort is pending."""


class PipelineOutcome(BaseModel):
    """The values downstream consumers may rely on."""
    run_id: Optional[str] = None
    plan_id: Optional[str] = None
    classification: Optional[str] = None
    override_detected: bool = False
    override_justification: Optional[str] = None
    apply_status: str = "not_started"
    final_state: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunOrchestrator:
    """
    Owns one PollSession and the calls that drive it.

    One orchestrator handles exactly one run. Restarting after a hard
    policy block means building a new orchestrator for a new run.
    """

    def __init__(
        self,
        client: RunProviderClient,
        context: OrchestrationContext | None = None,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Any] | None = None,
    ):
        self.client = client
        self.context = context or OrchestrationContext(workspace=client.workspace)
        self.config = config or OrchestratorConfig()
        self._clock = clock
        self._cancel_event = threading.Event()
        self._cancel_actor: Optional[str] = None
        self._cancel_reason: Optional[str] = None
        # Waiting on the cancel event lets an abort interrupt the poll interval.
        self._sleep = sleep or self._cancel_event.wait
        self._locked_run_id: Optional[str] = None

        self.session = new_session(clock(), self.config.session_timeout_seconds)
        self.machine = RunApprovalMachine(self.session, self.context.recorder)
        if self.config.post_comments:
            self.context.recorder.subscribe(self._post_audit_comment)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        config_ref: str | None = None,
        run_id: str | None = None,
        message: str | None = None,
    ) -> SessionState:
        """Create a run from *config_ref*, or resume *run_id*.

        Provider errors from createRun are raised unchanged and leave the
        session in CREATED.
        """
        if (config_ref is None) == (run_id is None):
            raise ValueError("Provide exactly one of config_ref or run_id")

        if run_id is not None:
            try:
                run = self._with_retries(self.client.get_run, run_id)
            except _PollCanceled:
                self._stop_if_canceled()
                return self.session.state
        else:
            run = self.client.create_run(config_ref, message=message)

        self.context.locks.acquire(run.id)
        self._locked_run_id = run.id
        self.session.deadline = self._clock() + timedelta(
            seconds=self.config.session_timeout_seconds
        )
        logger.info(
            "session started",
            extra={"run_id": run.id, "resumed": run_id is not None},
        )
        return self.machine.start(run.id)

    def close(self) -> None:
        """Release the per-run lock and stop posting comments."""
        if self._locked_run_id is not None:
            self.context.locks.release(self._locked_run_id)
            self._locked_run_id = None
        self.context.recorder.unsubscribe(self._post_audit_comment)

    def cancel(self, actor: str = "operator", reason: str = "operator abort") -> None:
        """Ask the polling loop to stop. Safe to call from another thread."""
        self._cancel_actor = actor
        self._cancel_reason = reason
        self._cancel_event.set()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _with_retries(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Call *fn*, retrying ProviderUnavailable with exponential backoff.

        A pending operator abort stops the retries with _PollCanceled.
        """
        max_retries = self.config.max_poll_retries
        for attempt in range(max_retries + 1):
            if self._cancel_event.is_set():
                raise _PollCanceled()
            try:
                return fn(*args)
            except ProviderUnavailable as exc:
                if attempt >= max_retries:
                    logger.error(
                        "provider unavailable, retries exhausted",
                        extra={"call": fn.__name__, "attempts": attempt + 1},
                    )
                    raise
                delay = self.config.retry_backoff_seconds * (2 ** attempt)
                logger.warning(
                    "provider unavailable, retrying",
                    extra={"call": fn.__name__, "attempt": attempt + 1,
                           "delay_seconds": delay, "error": str(exc)},
                )
                self._sleep(delay)
        raise ProviderUnavailable(f"{fn.__name__}: exhausted retries")

    def refresh(self) -> RunSnapshot:
        """Fetch one snapshot of the run and its policy checks."""
        run_id = self.session.run_id
        self.session.attempts += 1
        run = self._with_retries(self.client.get_run, run_id)
        results = self._with_retries(self.client.get_policy_results, run_id)
        return RunSnapshot(run=run, policy_results=results, observed_at=self._clock())

    def _stop_if_canceled(self) -> bool:
        if not self._cancel_event.is_set():
            return False
        self.machine.cancel(actor=self._cancel_actor, reason=self._cancel_reason)
        return True

    def poll(self, until: Iterable[SessionState] | None = None) -> SessionState:
        """Poll until the session reaches a state in *until* or terminates.

        Defaults to stopping at READY / OVERRIDE_GRANTED or any terminal
        state. AWAITING_DECISION keeps polling for a human override.
        """
        stop = frozenset(until) if until is not None else DECISION_STATES | TERMINAL_STATES
        while True:
            if self._stop_if_canceled() or self.session.terminal:
                return self.session.state
            if self.machine.expire(self._clock()):
                return self.session.state

            try:
                snapshot = self.refresh()
            except _PollCanceled:
                self._stop_if_canceled()
                return self.session.state
            state = self.machine.observe(snapshot)
            if state in stop or self.session.terminal:
                return state
            self._sleep(self.config.poll_interval_seconds)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def apply(self, comment: str | None = None) -> GateDecision:
        """Apply the run if the gate allows it. Rejections have no side effects."""
        if self._stop_if_canceled():
            return GateDecision(False, "run canceled")

        decision = check_eligible(
            self.session.state,
            self.session.classification,
            self.session.run,
        )
        if not decision:
            logger.info("apply rejected by gate", extra={"reason": decision.reason})
            return decision

        run = self.client.apply_run(
            self.session.run_id, comment or self.config.apply_comment,
        )
        self.session.apply_requested = True
        self.machine.observe(RunSnapshot(
            run=run,
            policy_results=self.session.snapshot.policy_results,
            observed_at=self._clock(),
        ))
        return decision

    def request_override(self, actor: str, justification: str) -> OverrideDecision:
        """Record a human override of a soft-mandatory failure.

        Validated locally before any provider call: the justification must
        be non-empty, the run must be awaiting a decision, and a run can
        be overridden at most once.
        """
        if not justification or not justification.strip():
            raise InvalidOverride("Override justification must not be empty")
        if self.session.override is not None or self.session.override_detected:
            raise InvalidOverride(f"Run {self.session.run_id} has already been overridden")
        if self.session.state != SessionState.AWAITING_DECISION:
            raise InvalidOverride(
                f"Run {self.session.run_id} is {self.session.state.value}, "
                f"not awaiting a decision"
            )

        decision = self.client.apply_override(self.session.run_id, justification, actor)
        self.session.record_override(decision)
        logger.info("override requested", extra={"override_actor": decision.actor})
        return decision

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def execute(
        self,
        config_ref: str | None = None,
        run_id: str | None = None,
        auto_apply: bool = True,
        comment: str | None = None,
    ) -> PipelineOutcome:
        """Run the whole Trigger -> terminal pipeline and return its outputs."""
        with LogContext.bind(workspace=self.context.workspace):
            try:
                self.start(config_ref=config_ref, run_id=run_id)
                with LogContext.bind(run_id=self.session.run_id):
                    state = self.poll()
                    if state in DECISION_STATES and auto_apply:
                        if self.apply(comment):
                            self.poll(until=TERMINAL_STATES)
            finally:
                self.close()
        return self.outcome()

    def outcome(self) -> PipelineOutcome:
        s = self.session
        return PipelineOutcome(
            run_id=s.run_id,
            plan_id=s.run.plan_id if s.run else None,
            classification=s.classification.value if s.classification else None,
            override_detected=s.override_detected or s.override is not None,
            override_justification=s.override.justification if s.override else None,
            apply_status=_APPLY_STATUS.get(
                s.state, "pending" if s.apply_requested else "not_started",
            ),
            final_state=s.state.value,
        )

    # ------------------------------------------------------------------
    # Audit comments
    # ------------------------------------------------------------------

    def _post_audit_comment(self, record: AuditRecord) -> None:
        """Best-effort: a failed comment never undoes the transition."""
        if record.run_id is None or record.run_id != self.session.run_id:
            return
        if record.to_state not in _COMMENTED_STATES:
            return

        text = f"[approval] {record.from_state} -> {record.to_state}"
        if record.actor:
            text += f" by {record.actor}"
        if record.justification:
            text += f": {record.justification}"

        try:
            self.client.post_comment(record.run_id, text)
        except ProviderError as exc:
            logger.warning(
                "audit comment not posted",
                extra={"to_state": record.to_state, "error": str(exc)},
            )
