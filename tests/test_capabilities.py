from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from regtruth.services.capabilities import CapabilityClient, CapabilityError, needs_ocr
from regtruth.services.records import DiscoverySource, Evidence


def _evidence(content_type: str = "text/html") -> Evidence:
    return Evidence(
        id="ev-1",
        source_id="src-1",
        url="https://porezna-uprava.gov.hr/pdv",
        domain="porezna-uprava.gov.hr",
        raw_content="<p>Stopa PDV-a 25%</p>",
        content_type=content_type,
        content_hash="abc",
        captured_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def test_scan_posts_source_and_filters_empty_documents() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"documents": [{"url": "https://a", "content": "x"}, {"url": "https://b"}]})

    client = CapabilityClient("http://capabilities", "secret", transport=httpx.MockTransport(handler))
    source = DiscoverySource(id="src-1", name="PU", url="https://porezna-uprava.gov.hr", domain="porezna-uprava.gov.hr", priority="CRITICAL")

    documents = asyncio.run(client.scan(source, run_id="run-1"))

    assert documents == [{"url": "https://a", "content": "x"}]
    assert captured["path"] == "/discovery/scan"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"]["run_id"] == "run-1"


def test_http_failures_become_capability_errors() -> None:
    client = CapabilityClient(
        "http://capabilities",
        transport=httpx.MockTransport(lambda request: httpx.Response(502, json={"detail": "bad gateway"})),
    )

    with pytest.raises(CapabilityError) as exc_info:
        asyncio.run(client.extract(_evidence()))
    assert exc_info.value.capability == "extraction"


def test_compose_rejects_incomplete_rule() -> None:
    client = CapabilityClient(
        "http://capabilities",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"rule": {"concept_slug": "vat"}})),
    )

    with pytest.raises(CapabilityError, match="missing fields"):
        asyncio.run(client.compose([]))


def test_ocr_falls_back_when_primary_engine_fails() -> None:
    engines: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        engine = json.loads(request.content)["engine"]
        engines.append(engine)
        if engine == "primary":
            return httpx.Response(500)
        return httpx.Response(200, json={"text": "Stopa PDV-a 25%"})

    client = CapabilityClient("http://capabilities", transport=httpx.MockTransport(handler))

    text, engine = asyncio.run(client.recognize_with_fallback(_evidence("image/png")))

    assert (text, engine) == ("Stopa PDV-a 25%", "fallback")
    assert engines == ["primary", "fallback"]


def test_needs_ocr_only_for_scanned_content() -> None:
    assert needs_ocr(_evidence("image/tiff"))
    assert needs_ocr(_evidence("application/pdf+scanned"))
    assert not needs_ocr(_evidence("application/pdf"))
