from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple
import uuid


PRIORITIES = ("low", "medium", "high", "critical")
CHANNELS = ("push", "email", "sms", "in_app")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Verdict(str, Enum):
    SEND_NOW = "NOW"
    DEFER = "LATER"
    SUPPRESS = "NEVER"

    @classmethod
    def parse(cls, value: str) -> "Verdict":
        return cls(str(value).upper())


class Stage(str, Enum):
    RECEIVED = "received"
    EXPIRY_CHECKED = "expiry_checked"
    DEDUPLICATED = "deduplicated"
    FATIGUE_CHECKED = "fatigue_checked"
    RULE_EVALUATED = "rule_evaluated"
    CLASSIFIER_INVOKED = "classifier_invoked"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class NotificationEvent:
    user_id: str
    event_type: str
    channel: str
    message: str = ""
    title: Optional[str] = None
    source: Optional[str] = None
    priority_hint: str = "medium"   # critical / high / medium / low
    received_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    dedupe_key: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def is_critical(self) -> bool:
        return self.priority_hint == "critical"

    @property
    def is_high_priority(self) -> bool:
        return self.priority_hint in ("critical", "high")

    @property
    def text(self) -> str:
        return " ".join(part for part in (self.title, self.message) if part)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class ClassifierResult:
    verdict: Verdict
    confidence: float
    label: str = ""


@dataclass
class EvaluationContext:
    """Per-event scratch state. Never shared between evaluations."""

    dnd_active: bool = False
    dnd_until: Optional[datetime] = None
    opted_out_channels: FrozenSet[str] = frozenset()
    channel_count_1h: int = 0
    recent_count_1h: int = 0
    recent_count_window: int = 0
    last_sent_at: Optional[datetime] = None
    in_cooldown: bool = False
    duplicate: bool = False
    similarity_score: Optional[float] = None
    classifier_result: Optional[ClassifierResult] = None
    embedding: Optional[Tuple[float, ...]] = None
    degraded: Dict[str, str] = field(default_factory=dict)

    def facts(self, event: NotificationEvent, now: datetime) -> Mapping[str, Any]:
        """Read-only view of everything a rule condition may reference."""
        minutes_since_last = None
        if self.last_sent_at is not None:
            minutes_since_last = (now - self.last_sent_at).total_seconds() / 60
        return MappingProxyType({
            "user_id": event.user_id,
            "event_type": event.event_type,
            "channel": event.channel,
            "source": event.source,
            "priority_hint": event.priority_hint,
            "dedupe_key": event.dedupe_key,
            "dnd_active": self.dnd_active,
            "channel_opted_out": event.channel in self.opted_out_channels,
            "channel_count_1h": self.channel_count_1h,
            "recent_count_1h": self.recent_count_1h,
            "recent_count_window": self.recent_count_window,
            "minutes_since_last_send": minutes_since_last,
            "in_cooldown": self.in_cooldown,
            "duplicate": self.duplicate,
            "similarity_score": self.similarity_score,
        })


@dataclass(frozen=True)
class Decision:
    event_id: str
    user_id: str
    verdict: Verdict
    reason: str
    priority_hint: str = "medium"
    rule_matched: Optional[str] = None
    classifier_confidence: Optional[float] = None
    similarity_score: Optional[float] = None
    scheduled_for: Optional[datetime] = None
    digest_key: Optional[str] = None
    fallback_mode: bool = False
    snapshot_version: Optional[int] = None
    trace: Tuple[Stage, ...] = ()
    decided_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "priority_hint": self.priority_hint,
            "rule_matched": self.rule_matched,
            "classifier_confidence": self.classifier_confidence,
            "similarity_score": self.similarity_score,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "digest_key": self.digest_key,
            "fallback_mode": self.fallback_mode,
            "snapshot_version": self.snapshot_version,
            "trace": [stage.value for stage in self.trace],
            "decided_at": self.decided_at.isoformat(),
        }
