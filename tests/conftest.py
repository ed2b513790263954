from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import pytest

from regtruth.core.config import Settings
from regtruth.jobs.context import build_stage_context
from regtruth.services.capabilities import CapabilityError
from regtruth.services.records import Rule
from regtruth.services.store import InMemoryRepository


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeCapabilities:
    def __init__(self) -> None:
        self.documents: dict[str, list[dict[str, Any]]] = {}
        self.failing_urls: set[str] = set()
        self.pointers: list[dict[str, Any]] = []
        self.rule: dict[str, Any] = {"value": "25", "risk_tier": "T2", "authority_level": "LAW", "confidence": 0.93}
        self.arbitration: dict[str, Any] | Exception | None = None
        self.calls: list[tuple[str, Any]] = []

    async def scan(self, source, *, run_id=None):
        self.calls.append(("scan", source.url))
        if source.url in self.failing_urls:
            raise CapabilityError("discovery", "HTTP 502")
        return list(self.documents.get(source.url, []))

    async def extract(self, evidence, *, text=None):
        self.calls.append(("extract", text))
        return [dict(item) for item in self.pointers]

    async def compose(self, pointers):
        self.calls.append(("compose", [pointer.id for pointer in pointers]))
        return {"concept_slug": pointers[0].concept_slug, **self.rule}

    async def arbitrate(self, conflict, rules):
        self.calls.append(("arbitrate", conflict.id))
        if isinstance(self.arbitration, Exception):
            raise self.arbitration
        return dict(self.arbitration or {})

    async def recognize_with_fallback(self, evidence):
        self.calls.append(("ocr", evidence.id))
        return "Standardna stopa PDV-a iznosi 25%", "fallback"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_backend="memory",
        otel_enabled=False,
        validation_artifacts_dir=str(tmp_path / "validation"),
    )


@pytest.fixture
def repository(clock: FrozenClock) -> InMemoryRepository:
    return InMemoryRepository(clock=clock)


@pytest.fixture
def capabilities() -> FakeCapabilities:
    return FakeCapabilities()


@pytest.fixture
def context(settings, repository, capabilities, clock):
    return build_stage_context(settings, repository, capabilities=capabilities, clock=clock)


@pytest.fixture
def make_rule(repository: InMemoryRepository, clock: FrozenClock):
    def factory(**overrides: Any) -> Rule:
        created_at = clock() - timedelta(hours=30)
        values: dict[str, Any] = {
            "id": str(uuid4()),
            "concept_slug": "vat-standard-rate",
            "value": "25",
            "value_type": "percentage",
            "status": "PENDING_REVIEW",
            "risk_tier": "T2",
            "authority_level": "LAW",
            "confidence": 0.92,
            "source_pointer_ids": [str(uuid4())],
            "created_at": created_at,
            "updated_at": created_at,
            "pending_since": created_at,
        }
        values.update(overrides)
        values.setdefault("base_confidence", values["confidence"])
        return repository.add_rule(Rule(**values))

    return factory
