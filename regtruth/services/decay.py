from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from regtruth.services.records import Rule

logger = logging.getLogger(__name__)

DECAY_ACTOR = "system:confidence-decay"

# (minimum whole months, reduction rate), checked from the longest age down.
DECAY_STEPS: tuple[tuple[int, float], ...] = (
    (24, 0.30),
    (12, 0.20),
    (6, 0.10),
    (3, 0.05),
)


@dataclass(slots=True)
class DecayReport:
    checked: int = 0
    decayed: int = 0
    unchanged: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "checked": self.checked,
            "decayed": self.decayed,
            "unchanged": self.unchanged,
            "errors": self.errors,
        }


def whole_months_between(start: datetime, end: datetime) -> int:
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if (end.day, end.time()) < (start.day, start.time()):
        months -= 1
    return max(0, months)


def decay_rate(months: int) -> float:
    for threshold, rate in DECAY_STEPS:
        if months >= threshold:
            return rate
    return 0.0


def decayed_confidence(base_confidence: float, months: int, *, floor: float) -> float:
    rate = decay_rate(months)
    if rate == 0.0:
        return base_confidence
    value = max(floor, base_confidence * (1 - rate))
    return round(min(base_confidence, value), 4)


def verification_reference(rule: Rule) -> datetime:
    return rule.last_verified_at or rule.published_at or rule.created_at


class DecayEngine:
    def __init__(
        self,
        repository: Any,
        *,
        floor: float = 0.5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.floor = floor
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, *, run_id: str | None = None) -> DecayReport:
        now = self.clock()
        report = DecayReport()
        for rule in await self.repository.list_decay_candidates():
            report.checked += 1
            months = whole_months_between(verification_reference(rule), now)
            target = decayed_confidence(rule.base_confidence, months, floor=self.floor)
            if target == rule.confidence:
                report.unchanged += 1
                continue
            note = {
                "kind": "confidence_decay",
                "author": DECAY_ACTOR,
                "at": now.isoformat(),
                "run_id": run_id,
                "months_since_verification": months,
                "rate": decay_rate(months),
                "previous_confidence": rule.confidence,
                "confidence": target,
            }
            try:
                updated = await self.repository.update_rule_confidence(rule_id=rule.id, confidence=target, note=note)
            except Exception:
                logger.exception("Confidence decay failed for rule_id=%s", rule.id)
                report.errors += 1
                continue
            if updated is None:
                report.unchanged += 1
                continue
            report.decayed += 1
            logger.info(
                "Decayed rule_id=%s confidence %.4f -> %.4f months=%s",
                rule.id,
                rule.confidence,
                target,
                months,
            )
        return report
