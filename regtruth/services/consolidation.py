from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from regtruth.services.records import HealthAlert, HealthSnapshot, Rule

logger = logging.getLogger(__name__)

SLUG_STOP_WORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "date",
        "value",
        "rate",
        "type",
        "limit",
        "threshold",
        "rok",
        "datum",
        "vrijednost",
        "stopa",
        "prag",
        "granica",
    }
)
_SLUG_SPLIT_RE = re.compile(r"[-_]+")


def slug_tokens(slug: str) -> set[str]:
    return {
        token
        for token in _SLUG_SPLIT_RE.split(slug.strip().lower())
        if len(token) >= 3 and token not in SLUG_STOP_WORDS
    }


def slugs_related(first: str, second: str) -> bool:
    if first.strip().lower() == second.strip().lower():
        return True
    first_tokens = slug_tokens(first)
    second_tokens = slug_tokens(second)
    if not first_tokens or not second_tokens:
        return False
    shared = first_tokens & second_tokens
    needed = math.ceil(min(len(first_tokens), len(second_tokens)) * 0.5)
    return len(shared) >= needed and len(shared) >= 2


def _cluster_by_slug(rules: list[Rule]) -> list[list[Rule]]:
    clusters: list[list[Rule]] = []
    assigned: set[int] = set()
    for index, rule in enumerate(rules):
        if index in assigned:
            continue
        cluster = [rule]
        assigned.add(index)
        for other_index in range(index + 1, len(rules)):
            if other_index in assigned:
                continue
            if slugs_related(rule.concept_slug, rules[other_index].concept_slug):
                cluster.append(rules[other_index])
                assigned.add(other_index)
        clusters.append(cluster)
    return clusters


def find_duplicate_groups(rules: Iterable[Rule]) -> list[dict[str, Any]]:
    by_value: dict[tuple[str, str], list[Rule]] = {}
    for rule in rules:
        if rule.status == "REJECTED" or rule.superseded_by is not None:
            continue
        by_value.setdefault((rule.value.strip().lower(), rule.value_type), []).append(rule)

    groups: list[dict[str, Any]] = []
    for (value, value_type), same_value in by_value.items():
        if len(same_value) < 2:
            continue
        same_value.sort(key=lambda item: item.created_at)
        for cluster in _cluster_by_slug(same_value):
            if len(cluster) < 2:
                continue
            groups.append(
                {
                    "value": value,
                    "value_type": value_type,
                    "concept_slug": cluster[0].concept_slug,
                    "rule_ids": [rule.id for rule in cluster],
                }
            )
    return groups


@dataclass(slots=True)
class ConsolidationReport:
    dry_run: bool
    duplicate_groups: list[dict[str, Any]] = field(default_factory=list)
    test_data_leaks: list[dict[str, Any]] = field(default_factory=list)
    alerts: list[HealthAlert] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.alerts


class ConsolidationAuditor:
    """Read-only scan for duplicate rules and test-source leakage into published truth."""

    def __init__(self, repository: Any, *, test_domains: Iterable[str]) -> None:
        self.repository = repository
        self.test_domains = {domain.strip().lower() for domain in test_domains if domain.strip()}

    def is_test_domain(self, domain: str) -> bool:
        # Tokens match anywhere in the host, so "porezna-test.hr" and "sandbox.example.com" both count.
        host = domain.strip().lower().rstrip(".")
        return any(token in host for token in self.test_domains)

    async def audit(self) -> ConsolidationReport:
        # Only dry runs exist: integrity findings are reported, never remediated.
        report = ConsolidationReport(dry_run=True)
        report.duplicate_groups = find_duplicate_groups(await self.repository.list_active_rules())
        report.test_data_leaks = [
            row for row in await self.repository.list_published_rule_sources() if self.is_test_domain(row["domain"])
        ]

        if report.duplicate_groups:
            report.alerts.append(
                HealthAlert(
                    type="DUPLICATES_DETECTED",
                    severity="warning",
                    message=f"{len(report.duplicate_groups)} duplicate rule group(s) detected",
                    details={"groups": report.duplicate_groups},
                )
            )
        if report.test_data_leaks:
            leaked_rules = sorted({row["rule_id"] for row in report.test_data_leaks})
            report.alerts.append(
                HealthAlert(
                    type="TEST_DATA_LEAKAGE",
                    severity="critical",
                    message=f"{len(leaked_rules)} published rule(s) cite test-source evidence",
                    details={"rule_ids": leaked_rules, "sources": report.test_data_leaks},
                )
            )
        return report

    async def audit_and_record(self, *, run_id: str | None = None) -> HealthSnapshot:
        report = await self.audit()
        if not report.healthy:
            logger.warning(
                "Consolidation audit found issues run_id=%s alerts=%s",
                run_id,
                [alert.type for alert in report.alerts],
            )
        return await self.repository.save_health_snapshot(
            kind="consolidation-audit",
            run_id=run_id,
            healthy=report.healthy,
            counts={
                "duplicate_groups": len(report.duplicate_groups),
                "test_data_leaks": len(report.test_data_leaks),
            },
            alerts=report.alerts,
            details={"dry_run": report.dry_run},
        )
