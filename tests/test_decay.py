from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from regtruth.services.decay import DecayEngine, decay_rate, decayed_confidence, whole_months_between


def test_whole_months_counts_completed_calendar_months() -> None:
    start = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert whole_months_between(start, datetime(2025, 2, 28, tzinfo=timezone.utc)) == 0
    assert whole_months_between(start, datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)) == 2
    assert whole_months_between(start, datetime(2024, 1, 1, tzinfo=timezone.utc)) == 0


@pytest.mark.parametrize(
    ("months", "rate"),
    [(0, 0.0), (2, 0.0), (3, 0.05), (5, 0.05), (6, 0.10), (11, 0.10), (12, 0.20), (23, 0.20), (24, 0.30), (60, 0.30)],
)
def test_decay_steps(months, rate) -> None:
    assert decay_rate(months) == rate


def test_thirteen_month_old_rule_drops_twenty_percent() -> None:
    assert decayed_confidence(0.95, 13, floor=0.5) == 0.76


def test_floor_engages_but_never_raises_confidence() -> None:
    assert decayed_confidence(0.6, 30, floor=0.5) == 0.5
    assert decayed_confidence(0.4, 30, floor=0.5) == 0.4


def test_engine_decays_once_per_period(repository, make_rule, clock) -> None:
    verified = datetime(2025, 1, 15, tzinfo=timezone.utc)
    stale = make_rule(status="PUBLISHED", confidence=0.95, last_verified_at=verified)
    fresh = make_rule(status="APPROVED", confidence=0.9, last_verified_at=clock())
    pending = make_rule(status="PENDING_REVIEW", confidence=0.95, created_at=verified)
    engine = DecayEngine(repository, floor=0.5, clock=clock)

    first = asyncio.run(engine.run(run_id="run-1"))
    second = asyncio.run(engine.run(run_id="run-2"))

    assert first.as_dict() == {"checked": 2, "decayed": 1, "unchanged": 1, "errors": 0}
    assert second.as_dict() == {"checked": 2, "decayed": 0, "unchanged": 2, "errors": 0}
    assert repository.rules[stale.id].confidence == 0.76
    assert repository.rules[stale.id].base_confidence == 0.95
    [note] = repository.rules[stale.id].review_notes
    assert note["kind"] == "confidence_decay"
    assert note["months_since_verification"] == 13
    assert repository.rules[fresh.id].review_notes == []
    assert repository.rules[pending.id].confidence == 0.95
