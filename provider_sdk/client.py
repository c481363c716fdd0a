"""
Run Provider SDK: Client
Thin synchronous wrapper over the Run Provider API.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from pydantic import BaseModel, ValidationError

from approval.errors import (
    InvalidOverride,
    MalformedSnapshot,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
)
from provider_sdk.models import OverrideDecision, PolicyCheck, Run

RUN_PROVIDER_URL = os.environ.get("RUN_PROVIDER_URL", "http://localhost:8000")
RUN_PROVIDER_TIMEOUT_SECONDS = float(
    os.environ.get("RUN_PROVIDER_TIMEOUT_SECONDS", "10")
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_reason(resp: httpx.Response) -> str:
    """Pull a human-readable reason out of an error response."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("detail", "error", "message"):
            if isinstance(body.get(key), str):
                return body[key]
    return f"HTTP {resp.status_code}"


class RunProviderClient:
    """
    Client for the Run Provider API.

    Creates runs, reads their status and policy checks, records
    overrides, triggers applies and posts audit comments. HTTP failures
    are translated into the approval error taxonomy.
    """

    def __init__(
        self,
        base_url: str = RUN_PROVIDER_URL,
        api_token: str | None = None,
        timeout: float = RUN_PROVIDER_TIMEOUT_SECONDS,
        workspace: str = "default",
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            base_url: Base URL of the provider (e.g. "http://localhost:8000")
            api_token: Bearer token sent on every request
            timeout: HTTP request timeout in seconds
            workspace: Workspace new runs are created in
            http_client: Pre-built httpx.Client (tests pass a TestClient)
            clock: Source of the last_polled_at stamp on fetched runs
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.workspace = workspace
        self._client = http_client or httpx.Client(timeout=timeout)
        self._clock = clock

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        try:
            resp = self._client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f"{method} {path} failed: {exc}") from exc

        code = resp.status_code
        if code == 429 or code >= 500:
            raise ProviderUnavailable(
                f"{method} {path} returned HTTP {code}: {_error_reason(resp)}",
                status_code=code,
            )
        if code == 404:
            raise NotFound(_error_reason(resp), status_code=code)
        if code >= 400:
            raise ProviderRejected(
                _error_reason(resp),
                status_code=code,
                retryable=code == 409,
            )
        return resp

    @staticmethod
    def _parse(model: type[BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise MalformedSnapshot(
                f"Provider returned a malformed {model.__name__}: {exc}"
            ) from exc

    def _parse_run(self, resp: httpx.Response) -> Run:
        run = self._parse(Run, self._json(resp))
        return run.model_copy(update={"last_polled_at": self._clock()})

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedSnapshot("Provider returned a non-JSON body") from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_run(self, config_ref: str, message: str | None = None) -> Run:
        """
        Start a new run from previously uploaded configuration.

        Raises ProviderRejected (retryable) when the workspace already
        has an active run.
        """
        resp = self._request(
            "POST",
            "/runs",
            json={
                "workspace": self.workspace,
                "config_ref": config_ref,
                "message": message,
            },
        )
        return self._parse_run(resp)

    def get_run(self, run_id: str) -> Run:
        """Fetch the current run snapshot. Side-effect free."""
        return self._parse_run(self._request("GET", f"/runs/{run_id}"))

    def get_policy_results(self, run_id: str) -> frozenset[PolicyCheck]:
        """List the policy evaluations recorded for a run."""
        body = self._json(self._request("GET", f"/runs/{run_id}/policy-checks"))
        if not isinstance(body, dict) or not isinstance(body.get("policy_checks"), list):
            raise MalformedSnapshot("Policy check listing is missing 'policy_checks'")
        return frozenset(self._parse(PolicyCheck, item) for item in body["policy_checks"])

    def apply_override(
        self,
        run_id: str,
        justification: str,
        actor: str | None = None,
    ) -> OverrideDecision:
        """Override a soft-mandatory failure. Justification is required."""
        if not justification or not justification.strip():
            raise InvalidOverride("Override justification must not be empty")
        resp = self._request(
            "POST",
            f"/runs/{run_id}/actions/override",
            json={"justification": justification, "actor": actor},
        )
        return self._parse(OverrideDecision, self._json(resp))

    def apply_run(self, run_id: str, comment: str | None = None) -> Run:
        """Queue the apply phase of a run."""
        resp = self._request(
            "POST",
            f"/runs/{run_id}/actions/apply",
            json={"comment": comment},
        )
        return self._parse_run(resp)

    def post_comment(self, run_id: str, text: str) -> None:
        """Attach an audit comment to a run."""
        self._request("POST", f"/runs/{run_id}/comments", json={"body": text})

    def health(self) -> dict:
        """Check provider health via GET /health."""
        return self._json(self._request("GET", "/health"))

    def close(self) -> None:
        self._client.close()
