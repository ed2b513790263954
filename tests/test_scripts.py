from __future__ import annotations

import hashlib
import importlib.util
import json
import subprocess
import sys
from pathlib import Path

import httpx
import pytest

SCRIPTS_DIR = Path(__file__).resolve().parents[1] / "scripts"


def _run_script(name: str, *args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPTS_DIR / name), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def _load_enqueue_command():
    spec = importlib.util.spec_from_file_location("enqueue_command", SCRIPTS_DIR / "enqueue_command.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_bootstrap_role_emits_sql_for_user_id_target() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    output = _run_script("bootstrap_access.py", "--actor", "cli", "role", "--user-id", user_id, "--role", "moderator")

    assert "update auth.users" in output
    assert f"where id = '{user_id}'::uuid;" in output
    assert "jsonb_build_object('role', 'moderator')" in output
    assert "values ('human_role_granted', 'user', '00000000-0000-0000-0000-000000000123', 'cli'" in output


def test_bootstrap_role_emits_sql_for_email_target() -> None:
    output = _run_script("bootstrap_access.py", "role", "--email", "o'brien@example.hr")

    assert "where email = 'o''brien@example.hr';" in output
    assert "jsonb_build_object('role', 'admin')" in output


def test_bootstrap_module_stores_only_key_hash() -> None:
    output = _run_script("bootstrap_access.py", "module", "--module-id", "ops-cron", "--api-key", "s3cret")

    assert "s3cret" not in output
    assert hashlib.sha256(b"s3cret").hexdigest() in output
    assert "array['commands:write']::text[]" in output
    assert "'module_credential_issued', 'module', 'ops-cron', 'system'" in output


def test_enqueue_command_dry_run_prints_body(capsys: pytest.CaptureFixture[str]) -> None:
    script = _load_enqueue_command()

    assert script.main(["release-sweep", "--run-id", "r-1", "--dry-run"]) == 0
    assert json.loads(capsys.readouterr().out) == {"command_type": "release-sweep", "run_id": "r-1"}


def test_enqueue_command_posts_with_module_headers() -> None:
    script = _load_enqueue_command()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"job_id": "job-1", "run_id": "r-1", "status": "queued"})

    queued = script.post_command(
        api_url="http://api.test/",
        module_id="ops-cron",
        api_key="s3cret",
        body=script.build_body(command_type="health-snapshot", run_id="r-1", job_key=None),
        transport=httpx.MockTransport(handler),
    )

    assert queued["job_id"] == "job-1"
    [request] = seen
    assert request.url == "http://api.test/commands"
    assert request.headers["X-Module-Id"] == "ops-cron"
    assert request.headers["X-API-Key"] == "s3cret"
    assert json.loads(request.content) == {"command_type": "health-snapshot", "run_id": "r-1"}


def test_enqueue_command_surfaces_rejection() -> None:
    script = _load_enqueue_command()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"detail": "missing required scopes"})

    with pytest.raises(httpx.HTTPStatusError):
        script.post_command(
            api_url="http://api.test",
            module_id="readonly",
            api_key="k",
            body={"command_type": "discovery-run"},
            transport=httpx.MockTransport(handler),
        )
