"""
Deduplication — exact fingerprint membership and embedding near-duplicates.

Both lookups raise DependencyUnavailable / DependencyTimeout instead of
guessing; the orchestrator decides the fallback. The exact check claims
the fingerprint up front so concurrent copies lose; once the verdict is
final the claim is kept by record() or dropped by release().
"""

from dataclasses import dataclass
from datetime import datetime
import hashlib
from typing import Optional, Sequence

import numpy as np

from notification_triage.engine.classifier import BoundedClassifier, normalize_text
from notification_triage.engine.models import EvaluationContext, NotificationEvent
from notification_triage.engine.store import HistoryStore
from notification_triage.logging import get_logger

logger = get_logger(__name__)

NONE = "none"
EXACT = "exact"
NEAR = "near"


@dataclass(frozen=True)
class DuplicateVerdict:
    kind: str = NONE
    score: Optional[float] = None
    matched_event_id: Optional[str] = None
    merge: bool = False

    @property
    def is_duplicate(self) -> bool:
        return self.kind != NONE


NOT_DUPLICATE = DuplicateVerdict()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if not denom:
        return 0.0
    return float(np.dot(va, vb) / denom)


class DedupEngine:
    def __init__(
        self,
        store: HistoryStore,
        embedder: Optional[BoundedClassifier] = None,
        ttl_seconds: int = 86400,
        near_k: int = 10,
        near_window_seconds: int = 300,
        near_threshold: float = 0.92,
    ):
        self.store = store
        self.embedder = embedder
        self.ttl_seconds = ttl_seconds
        self.near_k = near_k
        self.near_window_seconds = near_window_seconds
        self.near_threshold = near_threshold

    @staticmethod
    def fingerprint(event: NotificationEvent) -> str:
        if event.dedupe_key:
            discriminator = f"key:{event.dedupe_key}"
        else:
            text = normalize_text(event.text)
            discriminator = "text:" + hashlib.sha256(text.encode()).hexdigest()
        raw = f"{event.user_id}\x1f{event.event_type}\x1f{discriminator}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    def _exact_key(self, event: NotificationEvent) -> str:
        return f"dedup:{event.user_id}:{self.fingerprint(event)}"

    @staticmethod
    def _recent_key(user_id: str) -> str:
        return f"dedup:{user_id}:recent"

    @property
    def near_enabled(self) -> bool:
        return self.embedder is not None

    def check_exact(self, event: NotificationEvent, context: EvaluationContext) -> DuplicateVerdict:
        """
        Claim the fingerprint for `event` with SET NX. Losing the claim means
        an earlier submission, finished or still in flight, owns it. The
        winner must later record() or release().
        """
        key = self._exact_key(event)
        claimed = self.store.set_if_absent(key, event.id, self.ttl_seconds)
        context.duplicate = not claimed
        if claimed:
            return NOT_DUPLICATE
        return DuplicateVerdict(kind=EXACT, score=1.0, matched_event_id=self.store.get(key))

    def release(self, event: NotificationEvent):
        """Give up the fingerprint claimed by check_exact()."""
        key = self._exact_key(event)
        if self.store.get(key) == event.id:
            self.store.delete(key)

    async def check_near(
        self, event: NotificationEvent, context: EvaluationContext, now: datetime, deadline: float
    ) -> DuplicateVerdict:
        if self.embedder is None or not event.text:
            return NOT_DUPLICATE

        context.embedding = await self.embedder.embed(normalize_text(event.text), deadline)

        cutoff = now.timestamp() - self.near_window_seconds
        candidates = [
            entry for entry in self.store.get_recent(self._recent_key(event.user_id))
            if entry["sent_at"] >= cutoff
        ][: self.near_k]

        best, best_entry = 0.0, None
        for entry in candidates:
            score = cosine_similarity(context.embedding, entry["vector"])
            if score > best:
                best, best_entry = score, entry

        if best_entry is not None:
            context.similarity_score = round(best, 4)
        if best_entry is None or best <= self.near_threshold:
            return NOT_DUPLICATE

        return DuplicateVerdict(
            kind=NEAR,
            score=round(best, 4),
            matched_event_id=best_entry["event_id"],
            merge=event.source is not None and best_entry.get("source") == event.source,
        )

    def record(self, event: NotificationEvent, context: EvaluationContext, now: datetime):
        """Remember `event` so later submissions can match it. Raises on store outage."""
        self.store.set(self._exact_key(event), event.id, self.ttl_seconds)
        if context.embedding is not None:
            self.store.push_recent(
                self._recent_key(event.user_id),
                {
                    "event_id": event.id,
                    "source": event.source,
                    "vector": context.embedding,
                    "sent_at": now.timestamp(),
                },
                max_len=self.near_k,
                ttl_seconds=self.ttl_seconds,
            )
        logger.debug("Recorded dedup history", extra={"event_id": event.id, "user_id": event.user_id})
