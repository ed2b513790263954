from __future__ import annotations

import asyncio

from regtruth.services.consolidation import ConsolidationAuditor, find_duplicate_groups, slugs_related


def test_slug_relation_needs_two_meaningful_shared_tokens() -> None:
    assert slugs_related("vat-standard-rate", "VAT-standard-rate")
    assert slugs_related("pausal-tax-annual-threshold", "pausal-tax-threshold-annual-limit")
    assert not slugs_related("vat-standard-rate", "vat-reduced-rate")
    assert not slugs_related("income-tax-deadline", "vat-return-deadline")


def test_duplicate_groups_skip_rejected_and_superseded(repository, make_rule) -> None:
    first = make_rule(concept_slug="pausal-tax-annual-threshold", value="60000", value_type="currency_eur")
    second = make_rule(concept_slug="pausal-tax-threshold-annual", value="60000 ", value_type="currency_eur")
    make_rule(concept_slug="pausal-tax-annual-threshold", value="60000", value_type="currency_eur", status="REJECTED")
    make_rule(concept_slug="pausal-tax-annual-threshold", value="60000", value_type="currency_eur", superseded_by=first.id)
    make_rule(concept_slug="vat-standard-rate", value="60000", value_type="currency_eur")

    groups = find_duplicate_groups(list(repository.rules.values()))

    assert groups == [
        {
            "value": "60000",
            "value_type": "currency_eur",
            "concept_slug": "pausal-tax-annual-threshold",
            "rule_ids": [first.id, second.id],
        }
    ]


def test_audit_reports_duplicates_and_test_source_leakage(repository, make_rule) -> None:
    async def run():
        source = await repository.create_discovery_source(
            name="heartbeat monitor",
            url="https://heartbeat.example.hr/ping",
            domain="heartbeat.example.hr",
        )
        evidence, _ = await repository.create_evidence(
            source_id=source.id,
            url=source.url,
            domain=source.domain,
            raw_content="test payload",
        )
        [pointer] = await repository.create_source_pointers(
            evidence_id=evidence.id,
            pointers=[{"concept_slug": "vat-standard-rate", "extracted_value": "25"}],
        )
        leaked = make_rule(status="PUBLISHED", source_pointer_ids=[pointer.id])
        make_rule(status="APPROVED", concept_slug="vat-standard-rate")

        auditor = ConsolidationAuditor(repository, test_domains=["heartbeat", "test"])
        snapshot = await auditor.audit_and_record(run_id="audit-1")
        return leaked, snapshot

    leaked, snapshot = asyncio.run(run())

    assert snapshot.kind == "consolidation-audit"
    assert snapshot.healthy is False
    assert snapshot.details == {"dry_run": True}
    assert snapshot.counts == {"duplicate_groups": 1, "test_data_leaks": 1}
    alerts = {alert.type: alert for alert in snapshot.alerts}
    assert alerts["DUPLICATES_DETECTED"].severity == "warning"
    assert alerts["TEST_DATA_LEAKAGE"].severity == "critical"
    assert alerts["TEST_DATA_LEAKAGE"].details["rule_ids"] == [leaked.id]
    assert all(rule.superseded_by is None for rule in repository.rules.values())


def test_clean_store_yields_healthy_snapshot(repository, make_rule) -> None:
    make_rule(status="PUBLISHED")
    auditor = ConsolidationAuditor(repository, test_domains=["test"])

    snapshot = asyncio.run(auditor.audit_and_record(run_id=None))

    assert snapshot.healthy is True
    assert snapshot.alerts == []


def test_test_domain_tokens_match_inside_hyphenated_hosts(repository) -> None:
    auditor = ConsolidationAuditor(repository, test_domains=["heartbeat", "test", "synthetic", "debug"])

    assert auditor.is_test_domain("porezna-test.hr")
    assert auditor.is_test_domain("heartbeat-monitor.local")
    assert auditor.is_test_domain("API.Synthetic.example.com")
    assert not auditor.is_test_domain("porezna-uprava.hr")


def test_full_domain_setting_matches_that_host_and_subdomains(repository) -> None:
    auditor = ConsolidationAuditor(repository, test_domains=["sandbox.example.com"])

    assert auditor.is_test_domain("sandbox.example.com")
    assert auditor.is_test_domain("eu.sandbox.example.com")
    assert not auditor.is_test_domain("example.com")
