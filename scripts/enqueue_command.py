#!/usr/bin/env python3
"""Enqueue an orchestrator command through the operator API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import httpx

COMMAND_TYPES = (
    "discovery-run",
    "auto-approve-sweep",
    "conflict-sweep",
    "release-sweep",
    "confidence-decay",
    "consolidation-audit",
    "health-snapshot",
    "full-validation",
    "regression-detection",
    "feedback-review-flagging",
)


def build_body(*, command_type: str, run_id: str | None, job_key: str | None) -> dict[str, Any]:
    body: dict[str, Any] = {"command_type": command_type}
    if run_id:
        body["run_id"] = run_id
    if job_key:
        body["job_key"] = job_key
    return body


def post_command(
    *,
    api_url: str,
    module_id: str,
    api_key: str,
    body: dict[str, Any],
    timeout_seconds: float = 10.0,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    headers = {"X-API-Key": api_key, "X-Module-Id": module_id}
    with httpx.Client(base_url=api_url.rstrip("/"), timeout=timeout_seconds, transport=transport) as client:
        response = client.post("/commands", json=body, headers=headers)
    response.raise_for_status()
    return response.json()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Enqueue an orchestrator command.")
    parser.add_argument("command_type", choices=COMMAND_TYPES)
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--job-key", default=None, help="Dedupe key; a pending job with the same key wins")
    parser.add_argument("--api-url", default=os.getenv("RTL_API_URL", "http://localhost:8000"))
    parser.add_argument("--module-id", default=os.getenv("RTL_MODULE_ID"))
    parser.add_argument("--api-key", default=os.getenv("RTL_API_KEY"))
    parser.add_argument("--dry-run", action="store_true", help="Print the request body without sending it")
    args = parser.parse_args(argv)

    body = build_body(command_type=args.command_type, run_id=args.run_id, job_key=args.job_key)
    if args.dry_run:
        print(json.dumps(body, sort_keys=True))
        return 0

    if not args.module_id or not args.api_key:
        parser.error("--module-id and --api-key (or RTL_MODULE_ID / RTL_API_KEY) are required")

    try:
        queued = post_command(api_url=args.api_url, module_id=args.module_id, api_key=args.api_key, body=body)
    except httpx.HTTPStatusError as exc:
        print(f"command rejected: {exc.response.status_code} {exc.response.text}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:
        print(f"api unreachable: {exc}", file=sys.stderr)
        return 2

    print(json.dumps(queued, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
