"""
Rules Engine — evaluates operator-configured rules, first match wins.
No code deployment needed; publish a new rule list and the next snapshot
picks it up.

Rules are plain mappings:
    {
        "name": "Promotional Suppression",
        "conditions": [
            {"field": "event_type", "op": "in", "value": ["promo", "promotion"]},
            {"field": "recent_count_1h", "op": "gte", "value": 3}
        ],
        "action": "NEVER"
    }

Each condition is parsed into one of three predicate types and evaluated
by a small interpreter; nothing in a rule is ever executed as code.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from notification_triage.engine.errors import RuleConfigError
from notification_triage.engine.models import Verdict

_MISSING = object()


def resolve(name: str, facts: Mapping[str, Any], metadata: Mapping[str, Any]) -> Any:
    if name.startswith("metadata."):
        return metadata.get(name[len("metadata."):], _MISSING)
    if name in facts:
        return facts[name]
    return metadata.get(name, _MISSING)


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any
    negate: bool = False

    def holds(self, facts: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool:
        actual = resolve(self.field, facts, metadata)
        if actual is _MISSING:
            return self.negate
        return (actual == self.value) != self.negate

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": "neq" if self.negate else "eq", "value": self.value}


@dataclass(frozen=True)
class Membership:
    field: str
    values: Tuple[Any, ...]
    negate: bool = False

    def holds(self, facts: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool:
        actual = resolve(self.field, facts, metadata)
        if actual is _MISSING:
            return self.negate
        return (actual in self.values) != self.negate

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": "not_in" if self.negate else "in", "value": list(self.values)}


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: float

    OPS = {
        "gt": lambda a, b: a > b,
        "gte": lambda a, b: a >= b,
        "lt": lambda a, b: a < b,
        "lte": lambda a, b: a <= b,
    }

    def holds(self, facts: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool:
        actual = resolve(self.field, facts, metadata)
        # booleans and missing values never satisfy a numeric comparison
        if isinstance(actual, bool) or not isinstance(actual, (int, float)):
            return False
        return self.OPS[self.op](actual, self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}


Condition = Union[Equals, Membership, Compare]

DEFER_POLICIES = ("delay", "next_hour", "digest", "dnd_end")


@dataclass(frozen=True)
class DeferPolicy:
    kind: str = "delay"
    minutes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"policy": self.kind}
        if self.minutes is not None:
            out["minutes"] = self.minutes
        return out


@dataclass(frozen=True)
class RuleSpec:
    name: str
    conditions: Tuple[Condition, ...]
    action: Verdict
    override_fatigue: bool = False
    defer: Optional[DeferPolicy] = None
    record_always: bool = False
    description: str = ""

    def matches(self, facts: Mapping[str, Any], metadata: Mapping[str, Any]) -> bool:
        return all(cond.holds(facts, metadata) for cond in self.conditions)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "conditions": [c.to_dict() for c in self.conditions],
            "action": self.action.value,
            "override_fatigue": self.override_fatigue,
            "record_always": self.record_always,
        }
        if self.defer is not None:
            out["defer"] = self.defer.to_dict()
        if self.description:
            out["description"] = self.description
        return out


# ── Parsing ──────────────────────────────────────────────────

def parse_condition(raw: Mapping[str, Any], rule: Optional[str] = None) -> Condition:
    try:
        name, op = raw["field"], raw["op"]
    except (KeyError, TypeError):
        raise RuleConfigError(f"condition needs 'field' and 'op': {raw!r}", rule) from None
    value = raw.get("value")

    if op in ("eq", "neq"):
        return Equals(name, value, negate=op == "neq")
    if op in ("in", "not_in"):
        if not isinstance(value, (list, tuple)):
            raise RuleConfigError(f"'{op}' on {name!r} needs a list value", rule)
        return Membership(name, tuple(value), negate=op == "not_in")
    if op in Compare.OPS:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RuleConfigError(f"'{op}' on {name!r} needs a numeric value", rule)
        return Compare(name, op, value)
    raise RuleConfigError(f"unknown operator {op!r}", rule)


def parse_defer(raw: Any, rule: Optional[str] = None) -> Optional[DeferPolicy]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"policy": raw}
    if not isinstance(raw, Mapping):
        raise RuleConfigError(f"bad defer policy {raw!r}", rule)
    kind = raw.get("policy", "delay")
    if kind not in DEFER_POLICIES:
        raise RuleConfigError(f"unknown defer policy {kind!r}", rule)
    minutes = raw.get("minutes")
    if minutes is not None and (isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 0):
        raise RuleConfigError("defer minutes must be a non-negative integer", rule)
    return DeferPolicy(kind, minutes)


def parse_rule(raw: Mapping[str, Any]) -> RuleSpec:
    if not isinstance(raw, Mapping):
        raise RuleConfigError(f"rule must be a mapping, got {type(raw).__name__}")
    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise RuleConfigError("rule is missing a name")

    try:
        action = Verdict.parse(raw.get("action", ""))
    except ValueError:
        raise RuleConfigError(f"unknown action {raw.get('action')!r}", name) from None

    conditions = raw.get("conditions", [])
    if not isinstance(conditions, (list, tuple)):
        raise RuleConfigError("conditions must be a list", name)

    return RuleSpec(
        name=name,
        conditions=tuple(parse_condition(c, name) for c in conditions),
        action=action,
        override_fatigue=bool(raw.get("override_fatigue", False)),
        defer=parse_defer(raw.get("defer"), name),
        record_always=bool(raw.get("record_always", False)),
        description=raw.get("description", ""),
    )


def parse_rules(raw_rules: Sequence[Mapping[str, Any]]) -> Tuple[RuleSpec, ...]:
    rules = tuple(parse_rule(r) for r in raw_rules)
    seen = set()
    for rule in rules:
        if rule.name in seen:
            raise RuleConfigError("duplicate rule name", rule.name)
        seen.add(rule.name)
    return rules


# ── Evaluation ───────────────────────────────────────────────

@dataclass(frozen=True)
class RuleVerdict:
    rule: Optional[RuleSpec] = None

    @property
    def matched(self) -> bool:
        return self.rule is not None

    @property
    def action(self) -> Optional[Verdict]:
        return self.rule.action if self.rule else None


UNMATCHED = RuleVerdict()


class RulesEngine:
    def evaluate(
        self,
        rules: Sequence[RuleSpec],
        facts: Mapping[str, Any],
        metadata: Mapping[str, Any],
    ) -> RuleVerdict:
        """List order is precedence: the first fully satisfied rule wins."""
        for rule in rules:
            if rule.matches(facts, metadata):
                return RuleVerdict(rule)
        return UNMATCHED


# Built-in default rules (in production these come from the config provider)
DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "name": "Critical Security Alert",
        "conditions": [
            {"field": "event_type", "op": "in", "value": ["account_breach", "security_alert"]},
        ],
        "action": "NOW",
        "override_fatigue": True,
        "description": "Security events always go out immediately",
    },
    {
        "name": "Opted-out Channel",
        "conditions": [{"field": "channel_opted_out", "op": "eq", "value": True}],
        "action": "NEVER",
        "description": "User opted out of this channel",
    },
    {
        "name": "Promotional Suppression",
        "conditions": [
            {"field": "event_type", "op": "in", "value": ["promo", "promotion"]},
            {"field": "recent_count_1h", "op": "gte", "value": 3},
        ],
        "action": "NEVER",
        "description": "No promotions once the user already got 3+ notifications this hour",
    },
    {
        "name": "Quiet Hours",
        "conditions": [
            {"field": "dnd_active", "op": "eq", "value": True},
            {"field": "priority_hint", "op": "in", "value": ["low", "medium"]},
        ],
        "action": "LATER",
        "defer": {"policy": "dnd_end"},
        "description": "Hold non-urgent traffic until do-not-disturb ends",
    },
    {
        "name": "Digest Updates",
        "conditions": [{"field": "event_type", "op": "eq", "value": "update"}],
        "action": "LATER",
        "defer": {"policy": "digest"},
        "description": "Updates batched into the daily digest",
    },
]
