from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from regtruth.services.capabilities import CapabilityError
from regtruth.services.records import Conflict, Rule

logger = logging.getLogger(__name__)

ARBITER_ACTOR = "system:arbiter"
AUTHORITY_RANK = {"LAW": 1, "GUIDANCE": 2, "PROCEDURE": 3, "PRACTICE": 4}


@dataclass(slots=True)
class PrecedenceDecision:
    winner: Rule
    strategy: str
    rationale: str


@dataclass(slots=True)
class ArbitrationOutcome:
    conflict_id: str
    status: str
    winner_id: str | None = None
    strategy: str | None = None
    rationale: str | None = None
    loser_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "status": self.status,
            "winner_id": self.winner_id,
            "strategy": self.strategy,
            "rationale": self.rationale,
            "loser_ids": self.loser_ids,
        }


def _others(rules: list[Rule], rule: Rule) -> list[Rule]:
    return [other for other in rules if other.id != rule.id]


def decide_by_precedence(rules: list[Rule]) -> PrecedenceDecision | None:
    """Apply explicit overrides, then lex specialis, then authority. None means ambiguous."""
    for rule in rules:
        others = _others(rules, rule)
        if others and all(other.id in rule.overrides for other in others):
            return PrecedenceDecision(rule, "explicit_override", f"rule {rule.id} explicitly overrides the others")

    for rule in rules:
        scope = set(rule.applies_when)
        others = _others(rules, rule)
        if others and all(set(other.applies_when) < scope for other in others):
            return PrecedenceDecision(
                rule,
                "lex_specialis",
                f"rule {rule.id} applies to a strictly narrower scope ({', '.join(sorted(scope))})",
            )

    ranked = sorted(rules, key=lambda item: AUTHORITY_RANK.get(item.authority_level, len(AUTHORITY_RANK) + 1))
    if len(ranked) >= 2:
        best = AUTHORITY_RANK.get(ranked[0].authority_level)
        runner_up = AUTHORITY_RANK.get(ranked[1].authority_level)
        if best is not None and (runner_up is None or best < runner_up):
            return PrecedenceDecision(
                ranked[0],
                "authority",
                f"{ranked[0].authority_level} outranks {ranked[1].authority_level}",
            )
    return None


class ConflictResolver:
    def __init__(
        self,
        repository: Any,
        capabilities: Any,
        *,
        min_confidence: float = 0.8,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.capabilities = capabilities
        self.min_confidence = min_confidence
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def resolve(self, conflict_id: str) -> ArbitrationOutcome:
        conflict = await self.repository.get_conflict(conflict_id)
        if conflict.status != "OPEN":
            winner_id = (conflict.resolution or {}).get("winner_id")
            if winner_id:
                # Finish supersession left incomplete by an interrupted earlier delivery.
                await self._supersede_losers(conflict, winner_id, strategy=(conflict.resolution or {}).get("strategy"))
            return ArbitrationOutcome(conflict_id=conflict.id, status="noop", winner_id=winner_id)

        rules = await self.repository.list_rules_by_ids(conflict.rule_ids)
        live = [rule for rule in rules if rule.status != "REJECTED" and rule.superseded_by is None]
        if len(live) < 2:
            winner = live[0] if live else None
            return await self._resolve(
                conflict,
                winner=winner,
                strategy="moot",
                rationale="fewer than two live rules remain in conflict",
            )

        decision = decide_by_precedence(live)
        if decision is not None:
            return await self._resolve(
                conflict,
                winner=decision.winner,
                strategy=decision.strategy,
                rationale=decision.rationale,
            )

        return await self._arbitrate_with_capability(conflict, live)

    async def _arbitrate_with_capability(self, conflict: Conflict, rules: list[Rule]) -> ArbitrationOutcome:
        try:
            answer = await self.capabilities.arbitrate(conflict, rules)
        except CapabilityError as exc:
            logger.warning("Arbitration capability failed for conflict_id=%s: %s", conflict.id, exc)
            return await self._escalate(conflict, "arbitration_unavailable", {"error": str(exc)})

        by_id = {rule.id: rule for rule in rules}
        winner_id = answer.get("winner_rule_id")
        try:
            confidence = float(answer.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        details = {
            "winner_rule_id": winner_id,
            "confidence": confidence,
            "requires_human_review": bool(answer.get("requires_human_review")),
        }

        if winner_id not in by_id:
            return await self._escalate(conflict, "winner_not_in_conflict", details)
        if answer.get("requires_human_review"):
            return await self._escalate(conflict, "human_review_requested", details)
        if confidence < self.min_confidence:
            return await self._escalate(conflict, "low_arbitration_confidence", details)
        if all(rule.risk_tier == "T0" for rule in rules):
            return await self._escalate(conflict, "all_rules_t0", details)

        return await self._resolve(
            conflict,
            winner=by_id[winner_id],
            strategy="assisted",
            rationale=str(answer.get("rationale") or "assisted arbitration"),
            extra={"confidence": confidence},
        )

    async def _resolve(
        self,
        conflict: Conflict,
        *,
        winner: Rule | None,
        strategy: str,
        rationale: str,
        extra: dict[str, Any] | None = None,
    ) -> ArbitrationOutcome:
        resolution = {
            "winner_id": winner.id if winner else None,
            "strategy": strategy,
            "rationale": rationale,
            **(extra or {}),
        }
        resolved = await self.repository.resolve_conflict(
            conflict_id=conflict.id,
            resolution=resolution,
            actor=ARBITER_ACTOR,
            reason=strategy,
        )
        if resolved is None:
            return ArbitrationOutcome(conflict_id=conflict.id, status="noop")

        loser_ids: list[str] = []
        if winner is not None:
            loser_ids = await self._supersede_losers(conflict, winner.id, strategy=strategy)
        logger.info(
            "Resolved conflict_id=%s winner=%s strategy=%s losers=%s",
            conflict.id,
            resolution["winner_id"],
            strategy,
            loser_ids,
        )
        return ArbitrationOutcome(
            conflict_id=conflict.id,
            status="resolved",
            winner_id=resolution["winner_id"],
            strategy=strategy,
            rationale=rationale,
            loser_ids=loser_ids,
        )

    async def _supersede_losers(self, conflict: Conflict, winner_id: str, *, strategy: str | None) -> list[str]:
        superseded: list[str] = []
        for rule_id in conflict.rule_ids:
            if rule_id == winner_id:
                continue
            note = {
                "kind": "superseded",
                "author": ARBITER_ACTOR,
                "at": self.clock().isoformat(),
                "conflict_id": conflict.id,
                "superseded_by": winner_id,
                "strategy": strategy,
            }
            updated = await self.repository.supersede_rule(
                rule_id=rule_id,
                superseded_by=winner_id,
                note=note,
                actor=ARBITER_ACTOR,
                reason=f"lost conflict {conflict.id}",
            )
            if updated is not None:
                superseded.append(rule_id)
        return superseded

    async def _escalate(self, conflict: Conflict, reason: str, details: dict[str, Any]) -> ArbitrationOutcome:
        await self.repository.record_audit(
            action="conflict_escalated",
            entity_type="conflict",
            entity_id=conflict.id,
            actor=ARBITER_ACTOR,
            reason=reason,
            metadata=details,
        )
        logger.info("Escalated conflict_id=%s for human arbitration: %s", conflict.id, reason)
        return ArbitrationOutcome(conflict_id=conflict.id, status="escalated", rationale=reason)
