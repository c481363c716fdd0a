"""
Run Approval CLI: the trigger source.

Creates (or resumes) a provider run, drives it through the approval state
machine and prints the pipeline outputs as JSON.

Exit codes:
    0: applied, or ready for apply when --no-apply is given
    1: blocked, discarded, canceled or failed
    2: timed out waiting for a decision
    3: error communicating with the provider
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import replace
from typing import Optional, Sequence

import httpx

from approval.audit_spine import AUDIT_SPINE_DSN, AuditSpineWriter
from approval.errors import ApprovalError, ProviderError
from approval.locks import OrchestrationContext
from approval.log import configure_logging, get_logger
from approval.orchestrator import OrchestratorConfig, PipelineOutcome, RunOrchestrator
from approval.state_machine import SessionState
from provider_sdk.client import RUN_PROVIDER_TIMEOUT_SECONDS, RUN_PROVIDER_URL, RunProviderClient

logger = get_logger("cli")

EXIT_OK = 0
EXIT_BLOCKED = 1
EXIT_TIMED_OUT = 2
EXIT_PROVIDER_ERROR = 3

_OK_STATES = {SessionState.APPLIED.value, SessionState.READY.value, SessionState.OVERRIDE_GRANTED.value}


def exit_code_for(outcome: PipelineOutcome, auto_apply: bool) -> int:
    if outcome.final_state == SessionState.APPLIED.value:
        return EXIT_OK
    if not auto_apply and outcome.final_state in _OK_STATES:
        return EXIT_OK
    if outcome.final_state in (SessionState.TIMED_OUT.value, SessionState.AWAITING_DECISION.value):
        return EXIT_TIMED_OUT
    return EXIT_BLOCKED


def write_outputs(path: str, outcome: PipelineOutcome) -> None:
    """Append outputs as key=value lines (GitHub Actions output file format)."""
    with open(path, "a", encoding="utf-8") as fh:
        for key, value in outcome.model_dump().items():
            if value is None:
                value = ""
            elif isinstance(value, bool):
                value = str(value).lower()
            fh.write(f"{key}={value}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Drive a provider run through policy approval and apply.",
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--config-ref", help="Uploaded configuration to create a run from")
    target.add_argument("--run-id", help="Resume an existing run instead of creating one")
    parser.add_argument("--workspace", default=os.environ.get("RUN_PROVIDER_WORKSPACE", "default"))
    parser.add_argument("--provider-url", default=RUN_PROVIDER_URL)
    parser.add_argument("--token", default=os.environ.get("RUN_PROVIDER_TOKEN", ""))
    parser.add_argument("--no-apply", action="store_true", help="Stop once the run is ready for apply")
    parser.add_argument("--comment", default=None, help="Comment attached to the apply")
    parser.add_argument("--poll-interval", type=float, default=None)
    parser.add_argument("--timeout", type=int, default=None, help="Session deadline in seconds")
    parser.add_argument("--audit-dsn", default=AUDIT_SPINE_DSN, help="Mirror transitions to Postgres")
    parser.add_argument("--output-file", default=os.environ.get("GITHUB_OUTPUT", ""))
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(
    argv: Optional[Sequence[str]] = None,
    http_client: Optional[httpx.Client] = None,
) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = OrchestratorConfig()
    if args.poll_interval is not None:
        config = replace(config, poll_interval_seconds=args.poll_interval)
    if args.timeout is not None:
        config = replace(config, session_timeout_seconds=args.timeout)

    client = RunProviderClient(
        base_url=args.provider_url,
        api_token=args.token or None,
        timeout=RUN_PROVIDER_TIMEOUT_SECONDS,
        workspace=args.workspace,
        http_client=http_client,
    )
    context = OrchestrationContext(workspace=args.workspace)
    if args.audit_dsn:
        context.recorder.subscribe(AuditSpineWriter(args.audit_dsn).mirror)

    orchestrator = RunOrchestrator(client, context=context, config=config)

    def _abort(signum, _frame):
        logger.warning("abort signal received", extra={"signal": signum})
        orchestrator.cancel(actor="operator", reason=f"signal {signum}")

    previous = {sig: signal.signal(sig, _abort) for sig in (signal.SIGINT, signal.SIGTERM)}

    try:
        outcome = orchestrator.execute(
            config_ref=args.config_ref,
            run_id=args.run_id,
            auto_apply=not args.no_apply,
            comment=args.comment,
        )
    except ProviderError as exc:
        print(f"[approval] ERROR: provider call failed: {exc}", file=sys.stderr)
        return EXIT_PROVIDER_ERROR
    except ApprovalError as exc:
        print(f"[approval] ERROR: {exc}", file=sys.stderr)
        return EXIT_BLOCKED
    finally:
        client.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    print(json.dumps(outcome.model_dump(), indent=2))
    if args.output_file:
        write_outputs(args.output_file, outcome)
    return exit_code_for(outcome, auto_apply=not args.no_apply)


if __name__ == "__main__":
    sys.exit(main())
