"""
Run Approval Orchestrator
Drives a provider run through planning, policy checks, human override and
apply, recording every transition to an append-only audit trail.
"""
