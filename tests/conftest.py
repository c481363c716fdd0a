"""
Shared fixtures: a controllable clock, the in-memory provider sandbox served
through FastAPI's TestClient, and an orchestrator factory whose sleep
advances the clock instead of blocking.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from approval.audit import AuditRecorder
from approval.locks import OrchestrationContext
from approval.orchestrator import OrchestratorConfig, RunOrchestrator
from main import ConfigurationUpload, ProviderSandbox, create_app
from provider_sdk.client import RunProviderClient
from provider_sdk.models import EnforcementLevel, PlanSummary, PolicyCheck

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
WORKSPACE = "prod"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Policy check builders
# ---------------------------------------------------------------------------

def passed(name: str, level: str = "soft-mandatory") -> PolicyCheck:
    return PolicyCheck(name=name, enforcement_level=EnforcementLevel(level), passed=True)


def failed(name: str, level: str) -> PolicyCheck:
    return PolicyCheck(name=name, enforcement_level=EnforcementLevel(level), passed=False)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sandbox(clock) -> ProviderSandbox:
    """Sandbox that moves a run one step per 30 seconds of fake clock."""
    return ProviderSandbox(clock=clock, step_seconds=30)


@pytest.fixture
def upload(sandbox):
    """Upload a configuration version to the sandbox."""

    def _upload(ref: str, checks=(), **kwargs) -> str:
        sandbox.upload_configuration(ConfigurationUpload(
            ref=ref,
            policy_checks=list(checks),
            plan_summary=PlanSummary(to_add=2, to_change=1, to_destroy=0),
            **kwargs,
        ))
        return ref

    return _upload


@pytest.fixture
def http_client(sandbox):
    with TestClient(create_app(sandbox, token="")) as test_client:
        yield test_client


@pytest.fixture
def client(http_client, clock) -> RunProviderClient:
    return RunProviderClient(
        base_url="http://testserver",
        workspace=WORKSPACE,
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture
def context(clock) -> OrchestrationContext:
    return OrchestrationContext(workspace=WORKSPACE, recorder=AuditRecorder(clock=clock))


@pytest.fixture
def make_orchestrator(client, context, clock):
    """
    Build an orchestrator wired to the sandbox.

    Each sleep advances the fake clock and then runs the optional hook,
    which is how tests act as the human on the other side of the poll.
    """

    def _make(hook=None, provider=None, **overrides) -> RunOrchestrator:
        config = replace(
            OrchestratorConfig(
                poll_interval_seconds=30,
                session_timeout_seconds=600,
                max_poll_retries=2,
                retry_backoff_seconds=1,
                post_comments=True,
            ),
            **overrides,
        )
        sleeps: list[float] = []

        def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.advance(seconds)
            if hook is not None:
                hook(orchestrator)

        orchestrator = RunOrchestrator(
            provider or client,
            context=context,
            config=config,
            clock=clock,
            sleep=sleep,
        )
        orchestrator.sleeps = sleeps
        return orchestrator

    return _make
