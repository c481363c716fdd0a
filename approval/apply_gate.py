"""
Apply Gate
Decides whether a run may enter its apply phase.

The gate is a pure check: a rejection returns the reason and has no side
effects. Only the orchestrator calls the provider's apply endpoint, and
only after the gate allowed it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from approval.policy import Classification
from approval.state_machine import SessionState
from provider_sdk.models import Run, RunStatus


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


def _reject(reason: str) -> GateDecision:
    return GateDecision(allowed=False, reason=reason)


_REJECTED_STATES: dict[SessionState, str] = {
    SessionState.DISCARDED: "run discarded",
    SessionState.CANCELED: "run canceled",
    SessionState.TIMED_OUT: "run timed out",
    SessionState.PLAN_FAILED: "run failed",
    SessionState.APPLY_FAILED: "run failed",
    SessionState.HARD_BLOCKED: "policy still blocking",
    SessionState.AWAITING_DECISION: "policy still blocking",
    SessionState.CREATED: "plan not complete",
    SessionState.PLANNING: "plan not complete",
    SessionState.APPLY_QUEUED: "apply already started",
    SessionState.APPLYING: "apply already started",
    SessionState.APPLIED: "apply already started",
}


def check_eligible(
    state: SessionState,
    classification: Optional[Classification],
    run: Run | None = None,
) -> GateDecision:
    """Check whether a run in *state* may be applied.

    Eligible states are READY, OVERRIDE_GRANTED, and POLICY_CHECKING when
    every policy passed. A discarded, canceled or errored provider status
    rejects the run whatever the local state says.

    Returns a GateDecision with the rejection reason on failure.
    """
    status = run.status if run is not None else None
    if status == RunStatus.DISCARDED:
        return _reject("run discarded")
    if status in (RunStatus.CANCELED, RunStatus.FORCE_CANCELED):
        return _reject("run canceled")

    if state in _REJECTED_STATES:
        return _reject(_REJECTED_STATES[state])
    if status == RunStatus.ERRORED:
        return _reject("run failed")

    if classification is None:
        return _reject("policy results unavailable")
    if classification == Classification.HARD_FAIL:
        return _reject("policy still blocking")

    if state == SessionState.READY:
        if classification.blocking:
            return _reject("policy still blocking")
        return GateDecision(True, f"ready: {classification.value}")

    if state == SessionState.OVERRIDE_GRANTED:
        return GateDecision(True, "soft-mandatory failure overridden")

    if state == SessionState.POLICY_CHECKING:
        if classification == Classification.ALL_PASS:
            return GateDecision(True, "all policies passed")
        return _reject("policy still blocking")

    return _reject(f"unknown state {state.value}")
