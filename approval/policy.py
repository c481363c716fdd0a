"""
Policy Classification
Collapses the provider's Sentinel-style policy checks into one verdict.

Policy rules are evaluated by the provider; this module only interprets
the reported results. Precedence, first match wins:

    hard-mandatory failed  -> HARD_FAIL
    soft-mandatory failed  -> SOFT_FAIL
    anything else failed   -> ADVISORY_FAIL
    nothing failed         -> ALL_PASS
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from provider_sdk.models import EnforcementLevel, PolicyCheck


class Classification(str, Enum):
    ALL_PASS = "all_pass"
    ADVISORY_FAIL = "advisory_fail"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"

    @property
    def blocking(self) -> bool:
        return self in (Classification.SOFT_FAIL, Classification.HARD_FAIL)


def failing(results: Iterable[PolicyCheck]) -> list[PolicyCheck]:
    """Failed checks, sorted by name for stable reporting."""
    return sorted((r for r in results if not r.passed), key=lambda r: r.name)


def classify(results: Iterable[PolicyCheck]) -> Classification:
    """
    Classify a set of policy results.

    Pure and order-independent. An empty set means no policies are
    configured and classifies as ALL_PASS.
    """
    failed_levels = {r.enforcement_level for r in results if not r.passed}

    if EnforcementLevel.HARD_MANDATORY in failed_levels:
        return Classification.HARD_FAIL
    if EnforcementLevel.SOFT_MANDATORY in failed_levels:
        return Classification.SOFT_FAIL
    if failed_levels:
        return Classification.ADVISORY_FAIL
    return Classification.ALL_PASS
