#!/usr/bin/env python3
"""
Run Approval: Pipeline Trigger

Usage:
    1. uvicorn main:app --port 8000            (sandbox provider)
    2. python scripts/run_pipeline.py --config-ref cfg-1

Requires: httpx, pydantic
"""

from __future__ import annotations

import os
import sys

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from approval.cli import main

if __name__ == "__main__":
    sys.exit(main())
