from __future__ import annotations

import asyncio

from regtruth.services.arbiter import ConflictResolver, decide_by_precedence
from regtruth.services.capabilities import CapabilityError


def _open_conflict(repository, *rules):
    conflict, _ = asyncio.run(
        repository.create_conflict(rule_ids=[rule.id for rule in rules], reason="value mismatch", actor="test")
    )
    return conflict


def test_explicit_override_beats_authority(make_rule) -> None:
    law = make_rule(authority_level="LAW")
    practice = make_rule(authority_level="PRACTICE", value="13", overrides=[law.id])

    decision = decide_by_precedence([law, practice])

    assert decision.winner.id == practice.id
    assert decision.strategy == "explicit_override"


def test_narrower_scope_wins_as_lex_specialis(make_rule) -> None:
    general = make_rule(applies_when=["vat_registered"])
    specific = make_rule(value="13", applies_when=["vat_registered", "tourism_services"])

    decision = decide_by_precedence([general, specific])

    assert decision.winner.id == specific.id
    assert decision.strategy == "lex_specialis"


def test_equal_authority_is_ambiguous(make_rule) -> None:
    assert decide_by_precedence([make_rule(), make_rule(value="13")]) is None


def test_authority_resolution_supersedes_loser(repository, make_rule, capabilities, clock) -> None:
    law = make_rule(authority_level="LAW")
    guidance = make_rule(authority_level="GUIDANCE", value="13")
    conflict = _open_conflict(repository, law, guidance)
    resolver = ConflictResolver(repository, capabilities, clock=clock)

    outcome = asyncio.run(resolver.resolve(conflict.id))

    assert outcome.status == "resolved"
    assert outcome.winner_id == law.id
    assert outcome.loser_ids == [guidance.id]
    assert repository.conflicts[conflict.id].status == "RESOLVED"
    assert repository.rules[guidance.id].superseded_by == law.id
    assert repository.rules[guidance.id].review_notes[-1]["kind"] == "superseded"
    assert capabilities.calls == []

    again = asyncio.run(resolver.resolve(conflict.id))
    assert again.status == "noop"
    assert repository.conflicts[conflict.id].status == "RESOLVED"


def test_assisted_arbitration_accepts_confident_member_winner(repository, make_rule, capabilities, clock) -> None:
    first = make_rule()
    second = make_rule(value="13")
    conflict = _open_conflict(repository, first, second)
    capabilities.arbitration = {"winner_rule_id": second.id, "confidence": 0.91, "rationale": "newer gazette"}
    resolver = ConflictResolver(repository, capabilities, min_confidence=0.8, clock=clock)

    outcome = asyncio.run(resolver.resolve(conflict.id))

    assert outcome.strategy == "assisted"
    assert outcome.winner_id == second.id
    assert repository.rules[first.id].superseded_by == second.id


def test_unusable_arbitration_escalates_and_keeps_conflict_open(repository, make_rule, capabilities, clock) -> None:
    resolver = ConflictResolver(repository, capabilities, min_confidence=0.8, clock=clock)
    cases = [
        ({"winner_rule_id": "someone-else", "confidence": 0.99}, "winner_not_in_conflict"),
        ({"winner_rule_id": None, "confidence": 0.99, "requires_human_review": True}, "winner_not_in_conflict"),
        ("low", "low_arbitration_confidence"),
        ("human", "human_review_requested"),
        (CapabilityError("arbitration", "HTTP 503"), "arbitration_unavailable"),
    ]
    for answer, expected in cases:
        first = make_rule()
        second = make_rule(value="13")
        conflict = _open_conflict(repository, first, second)
        if answer == "low":
            answer = {"winner_rule_id": first.id, "confidence": 0.5}
        elif answer == "human":
            answer = {"winner_rule_id": first.id, "confidence": 0.95, "requires_human_review": True}
        capabilities.arbitration = answer

        outcome = asyncio.run(resolver.resolve(conflict.id))

        assert outcome.status == "escalated"
        assert outcome.rationale == expected
        assert repository.conflicts[conflict.id].status == "OPEN"
        assert repository.rules[first.id].superseded_by is None
        assert repository.rules[second.id].superseded_by is None


def test_all_t0_conflicts_always_go_to_humans(repository, make_rule, capabilities, clock) -> None:
    first = make_rule(risk_tier="T0")
    second = make_rule(risk_tier="T0", value="13")
    conflict = _open_conflict(repository, first, second)
    capabilities.arbitration = {"winner_rule_id": first.id, "confidence": 0.99}

    outcome = asyncio.run(ConflictResolver(repository, capabilities, clock=clock).resolve(conflict.id))

    assert outcome.rationale == "all_rules_t0"
    assert any(entry.action == "conflict_escalated" for entry in repository.audit_log)


def test_conflict_with_single_live_rule_resolves_as_moot(repository, make_rule, capabilities, clock) -> None:
    first = make_rule()
    second = make_rule(value="13")
    conflict = _open_conflict(repository, first, second)
    repository.rules[second.id].status = "REJECTED"

    outcome = asyncio.run(ConflictResolver(repository, capabilities, clock=clock).resolve(conflict.id))

    assert outcome.strategy == "moot"
    assert outcome.winner_id == first.id
    assert repository.rules[second.id].superseded_by == first.id
