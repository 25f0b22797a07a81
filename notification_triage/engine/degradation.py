"""
Degradation policy — the single place that maps a dependency failure at a
given stage to its documented fallback.

    stage        on DependencyUnavailable / DependencyTimeout
    -----------  ---------------------------------------------------------
    preferences  assume no do-not-disturb and no opt-outs
    dedup        skip duplicate detection (fail open)
    embedding    skip the near-duplicate comparison
    fatigue      exceeded, unless priority is critical/high
    classifier   configured default verdict (LATER unless overridden)
    record       history write dropped; decision stands

A timeout is handled exactly like an outage; only the reason text differs.
"""

from dataclasses import dataclass
from typing import Optional

from notification_triage.engine.errors import DependencyUnavailable
from notification_triage.engine.models import NotificationEvent, Verdict

PREFERENCES = "preferences"
DEDUP = "dedup"
EMBEDDING = "embedding"
FATIGUE = "fatigue"
CLASSIFIER = "classifier"
RECORD = "record"

_REASONS = {
    PREFERENCES: "preferences {kind}; assuming none set",
    DEDUP: "dedup skipped (history {kind})",
    EMBEDDING: "near-duplicate check skipped (embedding {kind})",
    FATIGUE: "fatigue counters {kind}; treated as {outcome}",
    CLASSIFIER: "classifier fallback ({kind}): {outcome}",
    RECORD: "history write skipped ({kind})",
}


@dataclass(frozen=True)
class Fallback:
    stage: str
    kind: str
    reason: str
    verdict: Optional[Verdict] = None
    exceeded: Optional[bool] = None


class DegradationPolicy:
    def __init__(self, classifier_fallback: Verdict = Verdict.DEFER):
        self.classifier_fallback = classifier_fallback

    def handle(self, stage: str, error: DependencyUnavailable, event: NotificationEvent) -> Fallback:
        if stage not in _REASONS:
            raise KeyError(f"no fallback registered for stage {stage!r}")
        kind = getattr(error, "kind", "unavailable")

        verdict = None
        exceeded = None
        outcome = ""
        if stage == FATIGUE:
            exceeded = not event.is_high_priority
            outcome = "exceeded" if exceeded else "ok"
        elif stage == CLASSIFIER:
            verdict = self.classifier_fallback
            outcome = verdict.value

        return Fallback(
            stage=stage,
            kind=kind,
            reason=_REASONS[stage].format(kind=kind, outcome=outcome),
            verdict=verdict,
            exceeded=exceeded,
        )
