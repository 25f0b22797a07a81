"""
Tests for rule parsing and first-match-wins evaluation.
"""

from __future__ import annotations

from types import MappingProxyType

import pytest

from notification_triage.engine.errors import RuleConfigError
from notification_triage.engine.models import Verdict
from notification_triage.engine.rules import (
    DEFAULT_RULES,
    Compare,
    Equals,
    Membership,
    RulesEngine,
    parse_condition,
    parse_rule,
    parse_rules,
)

FACTS = MappingProxyType({
    "event_type": "promo",
    "priority_hint": "low",
    "channel": "push",
    "recent_count_1h": 3,
    "minutes_since_last_send": None,
    "dnd_active": False,
})
META = MappingProxyType({"campaign": "spring", "tier": 2})


class TestConditions:
    def test_equality(self):
        assert Equals("event_type", "promo").holds(FACTS, META)
        assert not Equals("event_type", "message").holds(FACTS, META)
        assert Equals("event_type", "message", negate=True).holds(FACTS, META)

    def test_membership(self):
        assert Membership("priority_hint", ("low", "medium")).holds(FACTS, META)
        assert not Membership("priority_hint", ("high",)).holds(FACTS, META)
        assert Membership("priority_hint", ("high",), negate=True).holds(FACTS, META)

    @pytest.mark.parametrize(
        "op, value, expected",
        [("gt", 2, True), ("gt", 3, False), ("gte", 3, True), ("lt", 3, False), ("lte", 3, True)],
    )
    def test_numeric_comparison(self, op, value, expected):
        assert Compare("recent_count_1h", op, value).holds(FACTS, META) is expected

    def test_comparison_never_matches_missing_or_none(self):
        assert not Compare("minutes_since_last_send", "lt", 100).holds(FACTS, META)
        assert not Compare("unknown_field", "gte", 0).holds(FACTS, META)
        assert not Compare("dnd_active", "lt", 1).holds(FACTS, META)

    def test_metadata_lookup(self):
        assert Equals("metadata.campaign", "spring").holds(FACTS, META)
        assert Equals("campaign", "spring").holds(FACTS, META)
        assert Compare("metadata.tier", "gte", 2).holds(FACTS, META)

    def test_missing_field_only_satisfies_negations(self):
        assert not Equals("nope", "x").holds(FACTS, META)
        assert Equals("nope", "x", negate=True).holds(FACTS, META)
        assert Membership("nope", ("x",), negate=True).holds(FACTS, META)


class TestParsing:
    def test_parse_condition_variants(self):
        assert isinstance(parse_condition({"field": "a", "op": "eq", "value": 1}), Equals)
        assert isinstance(parse_condition({"field": "a", "op": "not_in", "value": [1]}), Membership)
        assert isinstance(parse_condition({"field": "a", "op": "lte", "value": 1.5}), Compare)

    @pytest.mark.parametrize(
        "raw",
        [
            {"field": "a", "op": "regex", "value": ".*"},
            {"field": "a", "op": "in", "value": "not-a-list"},
            {"field": "a", "op": "gt", "value": "3"},
            {"op": "eq", "value": 1},
        ],
    )
    def test_bad_conditions(self, raw):
        with pytest.raises(RuleConfigError):
            parse_condition(raw)

    def test_parse_rule_flags(self):
        rule = parse_rule({
            "name": "Digest",
            "conditions": [{"field": "event_type", "op": "eq", "value": "update"}],
            "action": "later",
            "defer": {"policy": "delay", "minutes": 30},
            "override_fatigue": True,
            "record_always": True,
        })

        assert rule.action == Verdict.DEFER
        assert rule.defer.kind == "delay"
        assert rule.defer.minutes == 30
        assert rule.override_fatigue and rule.record_always

    def test_round_trips_through_dict(self):
        rules = parse_rules(DEFAULT_RULES)

        assert parse_rules([r.to_dict() for r in rules]) == rules

    @pytest.mark.parametrize(
        "raw",
        [
            {"conditions": [], "action": "NOW"},
            {"name": "x", "conditions": [], "action": "SOMETIMES"},
            {"name": "x", "conditions": {}, "action": "NOW"},
            {"name": "x", "conditions": [], "action": "LATER", "defer": {"policy": "whenever"}},
        ],
    )
    def test_bad_rules(self, raw):
        with pytest.raises(RuleConfigError):
            parse_rule(raw)

    def test_duplicate_names_rejected(self):
        rule = {"name": "same", "conditions": [], "action": "NOW"}
        with pytest.raises(RuleConfigError):
            parse_rules([rule, rule])


class TestRulesEngine:
    def test_first_match_wins_regardless_of_specificity(self):
        rules = parse_rules([
            {"name": "broad", "conditions": [{"field": "channel", "op": "eq", "value": "push"}], "action": "LATER"},
            {
                "name": "specific",
                "conditions": [
                    {"field": "channel", "op": "eq", "value": "push"},
                    {"field": "event_type", "op": "eq", "value": "promo"},
                    {"field": "recent_count_1h", "op": "gte", "value": 3},
                ],
                "action": "NEVER",
            },
        ])

        verdict = RulesEngine().evaluate(rules, FACTS, META)

        assert verdict.matched
        assert verdict.rule.name == "broad"
        assert verdict.action == Verdict.DEFER

    def test_unmatched(self):
        rules = parse_rules([
            {"name": "sms only", "conditions": [{"field": "channel", "op": "eq", "value": "sms"}], "action": "NOW"},
        ])

        verdict = RulesEngine().evaluate(rules, FACTS, META)

        assert not verdict.matched
        assert verdict.action is None

    def test_empty_conditions_always_match(self):
        rules = parse_rules([{"name": "catch-all", "conditions": [], "action": "LATER"}])

        assert RulesEngine().evaluate(rules, FACTS, META).rule.name == "catch-all"

    def test_default_promotional_rule(self):
        rules = parse_rules(DEFAULT_RULES)

        verdict = RulesEngine().evaluate(rules, FACTS, META)

        assert verdict.rule.name == "Promotional Suppression"
        assert verdict.action == Verdict.SUPPRESS
