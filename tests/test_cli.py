"""
CLI Test Suite
Runs the trigger entry point end to end against the sandbox provider and
checks exit codes, printed outputs and the GitHub output file.

Usage:  pytest tests/test_cli.py
"""

from __future__ import annotations

import json

import psycopg2
import pytest
from fastapi.testclient import TestClient

from approval.cli import (
    EXIT_BLOCKED,
    EXIT_OK,
    EXIT_PROVIDER_ERROR,
    EXIT_TIMED_OUT,
    exit_code_for,
    main,
)
from approval import audit_spine
from approval.log import reset_logging
from approval.orchestrator import PipelineOutcome
from conftest import failed, passed
from main import ProviderSandbox, create_app


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def sandbox(clock):
    """Sandbox that settles every automatic step on the next read."""
    return ProviderSandbox(clock=clock, step_seconds=0)


@pytest.fixture
def run_cli(sandbox):
    def _run(*args: str) -> int:
        http = TestClient(create_app(sandbox, token=""))
        argv = [
            "--workspace", "prod",
            "--provider-url", "http://testserver",
            "--poll-interval", "0",
            "--timeout", "60",
            "--audit-dsn", "",
            "--output-file", "",
            *args,
        ]
        return main(argv, http_client=http)

    return _run


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def test_clean_run_applies(run_cli, upload, capsys, tmp_path):
    upload("cfg-1", [passed("tags")])
    outputs = tmp_path / "github_output"

    code = run_cli("--config-ref", "cfg-1", "--output-file", str(outputs))

    assert code == EXIT_OK
    printed = json.loads(capsys.readouterr().out)
    assert printed["final_state"] == "applied"
    assert printed["classification"] == "all_pass"
    lines = outputs.read_text().splitlines()
    assert "final_state=applied" in lines
    assert "override_detected=false" in lines
    assert "override_justification=" in lines


def test_hard_block_exits_blocked(run_cli, upload, sandbox, capsys):
    upload("cfg-hard", [failed("no-public-s3", "hard-mandatory")])
    assert run_cli("--config-ref", "cfg-hard") == EXIT_BLOCKED
    assert json.loads(capsys.readouterr().out)["final_state"] == "hard_blocked"
    assert sandbox.apply_calls == []


def test_no_apply_exits_ok_at_ready(run_cli, upload, sandbox, capsys):
    upload("cfg-1")
    assert run_cli("--config-ref", "cfg-1", "--no-apply") == EXIT_OK
    assert json.loads(capsys.readouterr().out)["final_state"] == "ready"
    assert sandbox.apply_calls == []


def test_locked_workspace_is_provider_error(run_cli, upload, client, capsys):
    upload("cfg-1")
    client.create_run("cfg-1")
    assert run_cli("--config-ref", "cfg-1") == EXIT_PROVIDER_ERROR
    assert "is locked by active run" in capsys.readouterr().err


def test_unreachable_audit_ledger_does_not_fail_the_run(run_cli, upload, monkeypatch, capsys):
    def refuse(*args, **kwargs):
        raise psycopg2.OperationalError("could not connect to server: Connection refused")

    monkeypatch.setattr(audit_spine.psycopg2, "connect", refuse)
    upload("cfg-1", [passed("tags")])

    code = run_cli("--config-ref", "cfg-1", "--audit-dsn", "postgresql://audit.invalid/approval")

    assert code == EXIT_OK
    captured = capsys.readouterr()
    assert json.loads(captured.out)["final_state"] == "applied"
    assert "audit spine write failed" in captured.err


def test_config_ref_and_run_id_are_exclusive(run_cli):
    with pytest.raises(SystemExit):
        run_cli("--config-ref", "cfg-1", "--run-id", "run-1")


# ---------------------------------------------------------------------------
# Exit code mapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "final_state, auto_apply, expected",
    [
        ("applied", True, EXIT_OK),
        ("ready", False, EXIT_OK),
        ("override_granted", False, EXIT_OK),
        ("ready", True, EXIT_BLOCKED),
        ("hard_blocked", True, EXIT_BLOCKED),
        ("apply_failed", True, EXIT_BLOCKED),
        ("discarded", True, EXIT_BLOCKED),
        ("canceled", False, EXIT_BLOCKED),
        ("timed_out", True, EXIT_TIMED_OUT),
    ],
)
def test_exit_code_for(final_state, auto_apply, expected):
    outcome = PipelineOutcome(final_state=final_state)
    assert exit_code_for(outcome, auto_apply=auto_apply) == expected
