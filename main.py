"""
Run Provider Sandbox
In-memory stand-in for the plan / policy / apply Run Provider API.

Speaks the same endpoints the orchestrator consumes so the client and the
whole approval pipeline can run without the vendor. Policy results are
pre-configured per configuration version; nothing here evaluates policy
rules. Runs move through their automatic lifecycle steps as the sandbox
clock passes, one step every PROVIDER_SANDBOX_STEP_SECONDS (all pending
steps at once when that is 0):

    planning -> policy_checking -> policy_checked | policy_soft_failed | errored
    apply_queued -> applying -> applied | errored

Human actions (override, discard, cancel) are exposed as endpoints too.
"""

from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

from approval.policy import Classification, classify
from provider_sdk.models import (
    FINAL_STATUSES,
    OverrideDecision,
    PlanSummary,
    PolicyCheck,
    Run,
    RunStatus,
)

PROVIDER_SANDBOX_TOKEN = os.environ.get("PROVIDER_SANDBOX_TOKEN", "")
PROVIDER_SANDBOX_STEP_SECONDS = float(
    os.environ.get("PROVIDER_SANDBOX_STEP_SECONDS", "0")
)

# Statuses the provider leaves on its own, without a human action.
_AUTOMATIC = frozenset({
    RunStatus.PLANNING,
    RunStatus.POLICY_CHECKING,
    RunStatus.APPLY_QUEUED,
    RunStatus.APPLYING,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ConfigurationUpload(BaseModel):
    ref: str
    policy_checks: list[PolicyCheck] = []
    plan_summary: PlanSummary = PlanSummary()
    plan_fails: bool = False
    apply_fails: bool = False


class CreateRunRequest(BaseModel):
    config_ref: str
    workspace: str = "default"
    message: Optional[str] = None


class OverrideRequest(BaseModel):
    justification: str = ""
    actor: Optional[str] = None


class ApplyRequest(BaseModel):
    comment: Optional[str] = None


class CommentRequest(BaseModel):
    body: str


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Sandbox state
# ---------------------------------------------------------------------------

class ProviderSandbox:
    """
    Authoritative run store for the sandbox provider.

    Enforces the workspace lock (one active run per workspace) and the
    single-override rule, and walks runs through their lifecycle.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        step_seconds: float = PROVIDER_SANDBOX_STEP_SECONDS,
    ):
        self._clock = clock
        self._step_seconds = step_seconds
        self._stepped_at: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self.configurations: dict[str, ConfigurationUpload] = {}
        self.runs: dict[str, Run] = {}
        self.run_configs: dict[str, str] = {}
        self.comments: dict[str, list[str]] = {}
        self.active_runs: dict[str, str] = {}
        self.apply_calls: list[str] = []

    def upload_configuration(self, upload: ConfigurationUpload) -> None:
        with self._lock:
            self.configurations[upload.ref] = upload

    def _get(self, run_id: str) -> Run:
        run = self.runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found.")
        return self._catch_up(run)

    def _catch_up(self, run: Run) -> Run:
        """Apply every automatic step that is due at the current clock."""
        now = self._clock()
        step = timedelta(seconds=self._step_seconds)
        while run.status in _AUTOMATIC:
            due = self._stepped_at[run.id] + step
            if now < due:
                break
            run = self._step(run)
            self._stepped_at[run.id] = due if self._step_seconds else now
        return run

    def _set(self, run: Run, **update) -> Run:
        updated = run.model_copy(update=update)
        self.runs[run.id] = updated
        self._stepped_at[run.id] = self._clock()
        if updated.status in FINAL_STATUSES and self.active_runs.get(run.workspace) == run.id:
            del self.active_runs[run.workspace]
        return updated

    def create_run(self, request: CreateRunRequest) -> Run:
        with self._lock:
            if request.config_ref not in self.configurations:
                raise HTTPException(
                    status_code=422,
                    detail=f"Configuration {request.config_ref} has not been uploaded.",
                )
            active = self.active_runs.get(request.workspace)
            if active is not None:
                self._get(active)
                active = self.active_runs.get(request.workspace)
            if active is not None:
                raise HTTPException(
                    status_code=409,
                    detail=f"Workspace {request.workspace} is locked by active run {active}.",
                )
            run = Run(
                id=f"run-{uuid4().hex[:12]}",
                status=RunStatus.PLANNING,
                workspace=request.workspace,
                message=request.message,
                created_at=self._clock(),
            )
            self.runs[run.id] = run
            self._stepped_at[run.id] = run.created_at
            self.run_configs[run.id] = request.config_ref
            self.comments[run.id] = []
            self.active_runs[request.workspace] = run.id
            return run

    def _config_for(self, run_id: str) -> ConfigurationUpload:
        return self.configurations[self.run_configs[run_id]]

    def _step(self, run: Run) -> Run:
        """Move a run one automatic lifecycle step forward."""
        config = self._config_for(run.id)

        if run.status == RunStatus.PLANNING:
            if config.plan_fails:
                return self._set(run, status=RunStatus.ERRORED)
            return self._set(
                run,
                status=RunStatus.POLICY_CHECKING,
                plan_id=f"plan-{run.id[4:]}",
                plan_summary=config.plan_summary,
            )
        if run.status == RunStatus.POLICY_CHECKING:
            verdict = classify(config.policy_checks)
            if verdict == Classification.HARD_FAIL:
                return self._set(run, status=RunStatus.ERRORED)
            if verdict == Classification.SOFT_FAIL:
                return self._set(run, status=RunStatus.POLICY_SOFT_FAILED)
            return self._set(run, status=RunStatus.POLICY_CHECKED)
        if run.status == RunStatus.APPLY_QUEUED:
            return self._set(run, status=RunStatus.APPLYING)
        if run.status == RunStatus.APPLYING:
            if config.apply_fails:
                return self._set(run, status=RunStatus.ERRORED)
            return self._set(run, status=RunStatus.APPLIED)
        return run

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            return self._get(run_id)

    def policy_checks(self, run_id: str) -> list[PolicyCheck]:
        with self._lock:
            run = self._get(run_id)
            if run.status in (RunStatus.PENDING, RunStatus.PLANNING, RunStatus.POLICY_CHECKING):
                return []
            if run.plan_summary is None:
                return []
            return list(self._config_for(run_id).policy_checks)

    def override(self, run_id: str, request: OverrideRequest) -> OverrideDecision:
        with self._lock:
            run = self._get(run_id)
            if not request.justification.strip():
                raise HTTPException(
                    status_code=422,
                    detail="Override justification must not be empty.",
                )
            if run.override is not None:
                raise HTTPException(
                    status_code=409,
                    detail=f"Run {run_id} already has an override recorded.",
                )
            if run.status != RunStatus.POLICY_SOFT_FAILED:
                raise HTTPException(
                    status_code=409,
                    detail=f"Run {run_id} is {run.status.value}, not awaiting a policy decision.",
                )
            decision = OverrideDecision(
                actor=request.actor or "human:operator",
                justification=request.justification,
                applied_at=self._clock(),
            )
            self._set(run, status=RunStatus.POLICY_OVERRIDE, override=decision)
            return decision

    def apply(self, run_id: str, request: ApplyRequest) -> Run:
        with self._lock:
            run = self._get(run_id)
            if run.status not in (RunStatus.POLICY_CHECKED, RunStatus.POLICY_OVERRIDE):
                raise HTTPException(
                    status_code=409,
                    detail=f"Run {run_id} is {run.status.value} and cannot be applied.",
                )
            self.apply_calls.append(run_id)
            if request.comment:
                self.comments[run_id].append(request.comment)
            return self._set(run, status=RunStatus.APPLY_QUEUED)

    def finish(self, run_id: str, status: RunStatus, reason: Optional[str] = None) -> Run:
        """Discard or cancel a run on behalf of a human."""
        with self._lock:
            run = self._get(run_id)
            if run.status in FINAL_STATUSES:
                raise HTTPException(
                    status_code=409,
                    detail=f"Run {run_id} is already {run.status.value}.",
                )
            if reason:
                self.comments[run_id].append(reason)
            return self._set(run, status=status)

    def comment(self, run_id: str, body: str) -> None:
        with self._lock:
            self._get(run_id)
            self.comments[run_id].append(body)

    def comments_for(self, run_id: str) -> list[str]:
        with self._lock:
            self._get(run_id)
            return list(self.comments[run_id])

    def status_of(self, run_id: str) -> RunStatus:
        """Current status as of the sandbox clock."""
        with self._lock:
            return self._get(run_id).status


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(sandbox: ProviderSandbox | None = None, token: str = PROVIDER_SANDBOX_TOKEN) -> FastAPI:
    sandbox = sandbox or ProviderSandbox()
    app = FastAPI(title="Run Provider Sandbox", version="1.0.0")
    app.state.sandbox = sandbox

    def authenticate(authorization: str = Header(default="")) -> None:
        if not token:
            return
        if authorization != f"Bearer {token}":
            raise HTTPException(status_code=401, detail="Missing or invalid Bearer token.")

    auth = [Depends(authenticate)]

    @app.get("/health")
    def health():
        return {"status": "operational", "service": "run-provider-sandbox"}

    @app.post("/configuration-versions", status_code=201, dependencies=auth)
    def upload_configuration(upload: ConfigurationUpload):
        sandbox.upload_configuration(upload)
        return {"ref": upload.ref, "policy_checks": len(upload.policy_checks)}

    @app.post("/runs", status_code=201, dependencies=auth)
    def create_run(request: CreateRunRequest):
        return sandbox.create_run(request).model_dump(mode="json")

    @app.get("/runs/{run_id}", dependencies=auth)
    def get_run(run_id: str):
        return sandbox.get_run(run_id).model_dump(mode="json")

    @app.get("/runs/{run_id}/policy-checks", dependencies=auth)
    def get_policy_checks(run_id: str):
        checks = sandbox.policy_checks(run_id)
        return {"policy_checks": [c.model_dump(mode="json") for c in checks]}

    @app.post("/runs/{run_id}/actions/override", dependencies=auth)
    def override(run_id: str, request: OverrideRequest):
        return sandbox.override(run_id, request).model_dump(mode="json")

    @app.post("/runs/{run_id}/actions/apply", status_code=202, dependencies=auth)
    def apply(run_id: str, request: ApplyRequest):
        return sandbox.apply(run_id, request).model_dump(mode="json")

    @app.post("/runs/{run_id}/actions/discard", dependencies=auth)
    def discard(run_id: str, request: ReasonRequest):
        return sandbox.finish(run_id, RunStatus.DISCARDED, request.reason).model_dump(mode="json")

    @app.post("/runs/{run_id}/actions/cancel", dependencies=auth)
    def cancel(run_id: str, request: ReasonRequest):
        return sandbox.finish(run_id, RunStatus.CANCELED, request.reason).model_dump(mode="json")

    @app.post("/runs/{run_id}/comments", status_code=201, dependencies=auth)
    def post_comment(run_id: str, request: CommentRequest):
        sandbox.comment(run_id, request.body)
        return {"run_id": run_id, "status": "created"}

    @app.get("/runs/{run_id}/comments", dependencies=auth)
    def list_comments(run_id: str):
        return {"comments": sandbox.comments_for(run_id)}

    return app


app = create_app()
