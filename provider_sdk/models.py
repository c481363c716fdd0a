"""
Run Provider SDK: Data Models
Wire shapes exchanged with the Run Provider API.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class RunStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    POLICY_CHECKING = "policy_checking"
    POLICY_CHECKED = "policy_checked"
    POLICY_SOFT_FAILED = "policy_soft_failed"
    POLICY_OVERRIDE = "policy_override"
    APPLY_QUEUED = "apply_queued"
    APPLYING = "applying"
    APPLIED = "applied"
    ERRORED = "errored"
    DISCARDED = "discarded"
    CANCELED = "canceled"
    FORCE_CANCELED = "force_canceled"


# Statuses after which the provider no longer holds the workspace slot.
FINAL_STATUSES = frozenset({
    RunStatus.APPLIED,
    RunStatus.ERRORED,
    RunStatus.DISCARDED,
    RunStatus.CANCELED,
    RunStatus.FORCE_CANCELED,
})


class EnforcementLevel(str, Enum):
    ADVISORY = "advisory"
    SOFT_MANDATORY = "soft-mandatory"
    HARD_MANDATORY = "hard-mandatory"


class PlanSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    to_add: int = 0
    to_change: int = 0
    to_destroy: int = 0


class PolicyCheck(BaseModel):
    """One Sentinel-style policy evaluation reported by the provider."""
    model_config = ConfigDict(frozen=True)

    name: str
    enforcement_level: EnforcementLevel
    passed: bool


class OverrideDecision(BaseModel):
    """A human override of a soft-mandatory failure."""
    model_config = ConfigDict(frozen=True)

    actor: str
    justification: str
    applied_at: datetime


class Run(BaseModel):
    """Provider-side snapshot of one plan/apply lifecycle attempt."""
    model_config = ConfigDict(frozen=True)

    id: str
    status: RunStatus
    workspace: str = ""
    message: Optional[str] = None
    plan_id: Optional[str] = None
    plan_summary: Optional[PlanSummary] = None
    override: Optional[OverrideDecision] = None
    created_at: datetime
    last_polled_at: Optional[datetime] = None
