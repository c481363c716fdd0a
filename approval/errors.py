"""
Approval Errors
Typed failures raised by the provider client, the state machine and the
orchestrator.

    ApprovalError
    |
    +-- ProviderError
    |   +-- ProviderUnavailable   transient, retried with backoff then raised
    |   +-- ProviderRejected      precondition failure, surfaced immediately
    |   +-- NotFound              unknown run id, fatal to the session
    |
    +-- InvalidOverride           rejected before any provider call
    +-- MalformedSnapshot         provider data failed local validation
    +-- SessionBusy               another session already drives this run

A local deadline is not an exception: it ends the session in the
TIMED_OUT state.
"""

from __future__ import annotations

from typing import Optional


class ApprovalError(Exception):
    """Base class for every error raised by the approval orchestrator."""


class ProviderError(ApprovalError):
    """A call to the Run Provider API failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Transport failure, rate limit or 5xx from the provider."""


class ProviderRejected(ProviderError):
    """The provider refused the request (workspace locked, wrong state...)."""

    def __init__(
        self,
        reason: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(reason, status_code=status_code)
        self.reason = reason
        self.retryable = retryable


class NotFound(ProviderError):
    """The referenced run does not exist at the provider."""


class InvalidOverride(ApprovalError):
    """Override attempted with no justification, in the wrong state, or twice."""


class MalformedSnapshot(ApprovalError):
    """A provider response or cached snapshot failed validation."""


class SessionBusy(ApprovalError):
    """A poll session already holds the lock for this run."""

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} is already being polled by another session")
        self.run_id = run_id
