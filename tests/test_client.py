"""
Run Provider Client Test Suite
Exercises the client against the sandbox provider, and the HTTP error
mapping against httpx.MockTransport.

Usage:  pytest tests/test_client.py
"""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from approval.errors import (
    InvalidOverride,
    MalformedSnapshot,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
)
from conftest import T0, failed, passed
from main import (
    ConfigurationUpload,
    CreateRunRequest,
    OverrideRequest,
    ProviderSandbox,
    create_app,
)
from provider_sdk.client import RunProviderClient
from provider_sdk.models import RunStatus


def mock_client(handler, **kwargs) -> RunProviderClient:
    return RunProviderClient(
        base_url="http://provider.test",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Against the sandbox
# ---------------------------------------------------------------------------

class TestSandboxRoundTrip:

    def test_health(self, client):
        assert client.health()["status"] == "operational"

    def test_create_run_starts_planning(self, client, upload, clock):
        upload("cfg-1")
        clock.advance(7)
        run = client.create_run("cfg-1", message="nightly")
        assert run.status == RunStatus.PLANNING
        assert run.workspace == "prod"
        assert run.message == "nightly"
        assert run.last_polled_at == clock()
        assert run.plan_summary is None

    def test_unknown_configuration_rejected(self, client):
        with pytest.raises(ProviderRejected) as exc_info:
            client.create_run("missing")
        assert exc_info.value.status_code == 422
        assert not exc_info.value.retryable
        assert "has not been uploaded" in exc_info.value.reason

    def test_locked_workspace_is_retryable_rejection(self, client, upload):
        upload("cfg-1")
        first = client.create_run("cfg-1")
        with pytest.raises(ProviderRejected) as exc_info:
            client.create_run("cfg-1")
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 409
        assert first.id in exc_info.value.reason

    def test_workspace_freed_once_run_errors_in_time(self, client, upload, clock):
        upload("cfg-broken", plan_fails=True)
        upload("cfg-1")
        first = client.create_run("cfg-broken")
        clock.advance(30)
        second = client.create_run("cfg-1")
        assert second.id != first.id

    def test_get_unknown_run(self, client):
        with pytest.raises(NotFound):
            client.get_run("run-nope")

    def test_policy_results_appear_after_plan(self, client, upload, clock):
        checks = [passed("tags"), failed("cost", "soft-mandatory")]
        upload("cfg-1", checks)
        run = client.create_run("cfg-1")
        assert client.get_policy_results(run.id) == frozenset()

        clock.advance(30)
        assert client.get_run(run.id).status == RunStatus.POLICY_CHECKING
        assert client.get_policy_results(run.id) == frozenset()
        clock.advance(30)
        assert client.get_run(run.id).status == RunStatus.POLICY_SOFT_FAILED
        assert client.get_policy_results(run.id) == frozenset(checks)

    def test_plan_summary_and_plan_id_after_planning(self, client, upload, clock):
        upload("cfg-1")
        run = client.create_run("cfg-1")
        clock.advance(30)
        planned = client.get_run(run.id)
        assert planned.plan_id == f"plan-{run.id[4:]}"
        assert planned.plan_summary.to_add == 2

    def test_override_and_apply(self, client, upload, sandbox, clock):
        upload("cfg-1", [failed("cost", "soft-mandatory")])
        run = client.create_run("cfg-1")
        clock.advance(60)

        decision = client.apply_override(run.id, "CAB-42 approved", actor="human:alice")
        assert decision.actor == "human:alice"
        assert decision.applied_at == T0 + timedelta(seconds=60)

        with pytest.raises(ProviderRejected):
            client.apply_override(run.id, "again", actor="human:bob")

        queued = client.apply_run(run.id, comment="ship it")
        assert queued.status == RunStatus.APPLY_QUEUED
        assert sandbox.apply_calls == [run.id]

    def test_repeated_reads_do_not_move_the_run(self, client, upload, clock):
        upload("cfg-1")
        run = client.create_run("cfg-1")
        for _ in range(3):
            assert client.get_run(run.id).status == RunStatus.PLANNING
        clock.advance(29)
        assert client.get_run(run.id).status == RunStatus.PLANNING
        clock.advance(1)
        assert client.get_run(run.id).status == RunStatus.POLICY_CHECKING
        assert client.get_run(run.id).status == RunStatus.POLICY_CHECKING

    def test_late_read_catches_up_every_due_step(self, client, upload, clock):
        upload("cfg-1")
        run = client.create_run("cfg-1")
        clock.advance(90)
        assert client.get_run(run.id).status == RunStatus.POLICY_CHECKED

    def test_zero_step_settles_on_first_read(self, clock):
        sandbox = ProviderSandbox(clock=clock, step_seconds=0)
        sandbox.upload_configuration(ConfigurationUpload(ref="cfg-1"))
        run = sandbox.create_run(CreateRunRequest(config_ref="cfg-1", workspace="prod"))
        assert sandbox.get_run(run.id).status == RunStatus.POLICY_CHECKED
        assert sandbox.get_run(run.id).status == RunStatus.POLICY_CHECKED

    def test_apply_refused_before_policy_settles(self, client, upload, sandbox):
        upload("cfg-1")
        run = client.create_run("cfg-1")
        with pytest.raises(ProviderRejected) as exc_info:
            client.apply_run(run.id)
        assert exc_info.value.status_code == 409
        assert sandbox.apply_calls == []

    def test_post_comment(self, client, upload, sandbox):
        upload("cfg-1")
        run = client.create_run("cfg-1")
        client.post_comment(run.id, "[approval] planning -> policy_checking")
        assert sandbox.comments_for(run.id) == ["[approval] planning -> policy_checking"]

    def test_sandbox_override_requires_soft_failure(self, sandbox, upload, client):
        upload("cfg-1")
        run = client.create_run("cfg-1")
        with pytest.raises(HTTPException):
            sandbox.override(run.id, OverrideRequest(justification="too early"))


class TestAuthentication:

    def test_token_required_when_configured(self, sandbox, upload, clock):
        upload("cfg-1")
        with TestClient(create_app(sandbox, token="s3cret")) as http:
            anonymous = RunProviderClient(base_url="http://testserver", http_client=http)
            with pytest.raises(ProviderRejected) as exc_info:
                anonymous.create_run("cfg-1")
            assert exc_info.value.status_code == 401

            authed = RunProviderClient(
                base_url="http://testserver", api_token="s3cret", http_client=http,
            )
            assert authed.create_run("cfg-1").status == RunStatus.PLANNING

    def test_health_is_public(self, sandbox):
        with TestClient(create_app(sandbox, token="s3cret")) as http:
            anonymous = RunProviderClient(base_url="http://testserver", http_client=http)
            assert anonymous.health()["service"] == "run-provider-sandbox"


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestErrorMapping:

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_transient_statuses_unavailable(self, status):
        client = mock_client(lambda request: httpx.Response(status, json={"detail": "busy"}))
        with pytest.raises(ProviderUnavailable) as exc_info:
            client.get_run("run-1")
        assert exc_info.value.status_code == status

    def test_transport_error_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable):
            mock_client(handler).get_run("run-1")

    def test_404_not_found(self):
        client = mock_client(lambda request: httpx.Response(404, json={"detail": "Run run-1 not found."}))
        with pytest.raises(NotFound, match="run-1 not found"):
            client.get_run("run-1")

    def test_400_rejected_not_retryable(self):
        client = mock_client(lambda request: httpx.Response(400, text="bad request"))
        with pytest.raises(ProviderRejected) as exc_info:
            client.apply_run("run-1")
        assert not exc_info.value.retryable
        assert exc_info.value.reason == "bad request"

    def test_malformed_run_body(self):
        client = mock_client(lambda request: httpx.Response(200, json={"id": "run-1", "status": "exploded"}))
        with pytest.raises(MalformedSnapshot):
            client.get_run("run-1")

    def test_non_json_body(self):
        client = mock_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(MalformedSnapshot):
            client.get_run("run-1")

    def test_policy_listing_without_key(self):
        client = mock_client(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(MalformedSnapshot):
            client.get_policy_results("run-1")

    def test_unknown_enforcement_level(self):
        body = {"policy_checks": [{"name": "x", "enforcement_level": "mandatory-ish", "passed": False}]}
        client = mock_client(lambda request: httpx.Response(200, json=body))
        with pytest.raises(MalformedSnapshot):
            client.get_policy_results("run-1")

    @pytest.mark.parametrize("justification", ["", "   "])
    def test_blank_override_never_reaches_provider(self, justification):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        with pytest.raises(InvalidOverride):
            mock_client(handler).apply_override("run-1", justification, actor="human:alice")
        assert calls == []

    def test_bearer_token_sent(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200, json={"status": "operational"})

        mock_client(handler, api_token="tok").health()
        assert seen == ["Bearer tok"]

    def test_create_run_sends_workspace(self):
        bodies = []

        def handler(request):
            bodies.append(request.read())
            return httpx.Response(201, json={
                "id": "run-1", "status": "planning", "created_at": T0.isoformat(),
            })

        run = mock_client(handler, workspace="staging").create_run("cfg-9")
        assert run.id == "run-1"
        assert b'"workspace":"staging"' in bodies[0].replace(b" ", b"")
