from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import metrics

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeadLetterDepth:
    depth: int
    threshold: int

    @property
    def exceeded(self) -> bool:
        return self.depth > self.threshold


class DeadLetterMonitor:
    """Alerts operators when unreplayed dead letters pile up. Never remediates."""

    def __init__(self, repository: Any, *, threshold: int, meter: metrics.Meter | None = None) -> None:
        self.repository = repository
        self.threshold = max(0, threshold)
        meter = meter or metrics.get_meter("regtruth.dead_letters")
        self._alerts = meter.create_counter(
            "regtruth.dead_letter.alerts",
            unit="1",
            description="Dead-letter depth threshold breaches observed by workers.",
        )

    async def check(self, *, source: str) -> DeadLetterDepth:
        depth = DeadLetterDepth(
            depth=await self.repository.count_dead_letters(),
            threshold=self.threshold,
        )
        if depth.exceeded:
            logger.error(
                "Dead-letter depth %s exceeds threshold %s source=%s; manual replay required",
                depth.depth,
                depth.threshold,
                source,
            )
            self._alerts.add(1, {"source": source})
        return depth
