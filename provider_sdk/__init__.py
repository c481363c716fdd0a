"""
Run Provider SDK
Typed client for the plan / policy / apply Run Provider API.
"""

from provider_sdk.client import RunProviderClient
from provider_sdk.models import (
    EnforcementLevel,
    OverrideDecision,
    PlanSummary,
    PolicyCheck,
    Run,
    RunStatus,
)

__all__ = [
    "RunProviderClient",
    "EnforcementLevel",
    "OverrideDecision",
    "PlanSummary",
    "PolicyCheck",
    "Run",
    "RunStatus",
]
