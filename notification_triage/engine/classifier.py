"""
Classifier port — secondary classification and embeddings behind hard deadlines.

BoundedClassifier wraps any ClassifierPort: every call runs under
asyncio.wait_for, is cancelled when its deadline passes, is never retried,
and is short-circuited while the circuit breaker is OPEN. Failures surface
as DependencyTimeout / DependencyUnavailable for the degradation policy.
"""

import asyncio
import hashlib
import re
import time
from typing import Awaitable, Callable, Optional, Protocol, Sequence, Tuple

import numpy as np

from notification_triage.engine.errors import DependencyTimeout, DependencyUnavailable
from notification_triage.engine.models import (
    ClassifierResult,
    EvaluationContext,
    NotificationEvent,
    Verdict,
)
from notification_triage.logging import get_logger

logger = get_logger(__name__)

Vector = Tuple[float, ...]


class ClassifierPort(Protocol):
    async def classify(
        self, event: NotificationEvent, context: EvaluationContext, deadline: float
    ) -> ClassifierResult: ...

    async def embed(self, text: str, deadline: float) -> Sequence[float]: ...


class CircuitBreaker:
    def __init__(self, failure_threshold=5, reset_timeout=30.0, clock: Callable[[], float] = time.monotonic):
        self.failures = 0
        self.state = "CLOSED"
        self.last_failure_time = None
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

    def can_attempt(self) -> bool:
        if self.state == "OPEN":
            if self._clock() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF-OPEN"
                return True
            return False
        return True

    def record_success(self):
        self.failures = 0
        self.state = "CLOSED"

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = self._clock()
        if self.state == "HALF-OPEN" or self.failures >= self.failure_threshold:
            self.state = "OPEN"

    @property
    def status(self):
        return self.state


class BoundedClassifier:
    def __init__(
        self,
        port: ClassifierPort,
        timeout: float = 0.3,
        embedding_timeout: float = 0.08,
        breaker: Optional[CircuitBreaker] = None,
        embedding_breaker: Optional[CircuitBreaker] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.port = port
        self.timeout = timeout
        self.embedding_timeout = embedding_timeout
        self.breaker = breaker or CircuitBreaker()
        self.embedding_breaker = embedding_breaker or CircuitBreaker()
        self._slots = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def classify(
        self, event: NotificationEvent, context: EvaluationContext, deadline: float
    ) -> ClassifierResult:
        deadline = min(self.timeout, deadline)
        result = await self._bounded(
            "classifier", self.breaker, lambda: self.port.classify(event, context, deadline), deadline
        )
        if not isinstance(result, ClassifierResult) or not 0.0 <= result.confidence <= 1.0:
            raise DependencyUnavailable("classifier", f"malformed result {result!r}")
        return result

    async def embed(self, text: str, deadline: float) -> Vector:
        deadline = min(self.embedding_timeout, deadline)
        vector = await self._bounded(
            "embedding", self.embedding_breaker, lambda: self.port.embed(text, deadline), deadline
        )
        return tuple(float(x) for x in vector)

    async def _bounded(self, name: str, breaker: CircuitBreaker, call: Callable[[], Awaitable], deadline: float):
        if deadline <= 0:
            raise DependencyTimeout(name, 0.0)
        if not breaker.can_attempt():
            raise DependencyUnavailable(name, "circuit breaker OPEN")
        try:
            result = await asyncio.wait_for(self._limited(call), timeout=deadline)
        except asyncio.TimeoutError:
            breaker.record_failure()
            logger.warning("%s call abandoned after %.0fms", name, deadline * 1000)
            raise DependencyTimeout(name, deadline) from None
        except DependencyUnavailable:
            breaker.record_failure()
            raise
        except Exception as e:
            breaker.record_failure()
            logger.warning("%s call failed: %s", name, e)
            raise DependencyUnavailable(name, str(e)) from e
        breaker.record_success()
        return result

    async def _limited(self, call: Callable[[], Awaitable]):
        if self._slots is None:
            return await call()
        async with self._slots:
            return await call()


# ── In-process implementations ───────────────────────────────

_TOKEN = re.compile(r"\w+")


def normalize_text(text: str) -> str:
    return " ".join(_TOKEN.findall(text.lower()))


class HashingEmbedder:
    """Hashed bag-of-words vectors, L2-normalized. Deterministic across processes."""

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions, dtype=float)
        for token in normalize_text(text).split():
            digest = hashlib.md5(token.encode()).digest()
            vec[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        norm = np.linalg.norm(vec)
        return vec / norm if norm else vec

    async def embed(self, text: str, deadline: float) -> Vector:
        return tuple(self.vector(text).tolist())


class HeuristicClassifier:
    """
    Keyword and event-type scoring standing in for an LLM call.
    In production replace classify() with the model client, keeping the
    ClassifierResult contract.
    """

    TYPE_SCORES = {
        "message": 0.70, "security_alert": 0.95, "account_breach": 0.95, "alert": 0.85,
        "reminder": 0.55, "update": 0.40, "promo": 0.20, "promotion": 0.20, "system_event": 0.60,
    }
    URGENT = re.compile(r"\b(otp|password|breach|unauthori[sz]ed|outage|failed|expir\w*|security)\b")
    PROMO = re.compile(r"\b(sale|discount|coupon|deal|offer|promo\w*|\d+% off)\b")

    def __init__(self, embedder: Optional[HashingEmbedder] = None):
        self.embedder = embedder or HashingEmbedder()

    async def classify(self, event: NotificationEvent, context: EvaluationContext, deadline: float) -> ClassifierResult:
        score = self.TYPE_SCORES.get(event.event_type, 0.50)
        reasons = [f"event_type={event.event_type}"]
        text = event.text.lower()

        if self.URGENT.search(text):
            score += 0.15
            reasons.append("urgent wording")
        if self.PROMO.search(text):
            score -= 0.20
            reasons.append("promotional wording")

        if event.priority_hint == "critical":
            score = max(score, 0.93)
        elif event.priority_hint == "high":
            score = max(score, 0.78)
        elif event.priority_hint == "low":
            score = min(score, 0.35)

        if context.recent_count_1h > 3:
            score -= 0.08 * (context.recent_count_1h - 3)
            reasons.append(f"{context.recent_count_1h} sends in last hour")
        if context.dnd_active and not event.is_high_priority:
            score -= 0.18
            reasons.append("do-not-disturb")

        score = max(0.0, min(1.0, score))
        if score >= 0.75:
            verdict = Verdict.SEND_NOW
        elif score >= 0.35:
            verdict = Verdict.DEFER
        else:
            verdict = Verdict.SUPPRESS
        confidence = round(min(0.99, 0.5 + abs(score - 0.55)), 2)
        return ClassifierResult(verdict=verdict, confidence=confidence, label=", ".join(reasons))

    async def embed(self, text: str, deadline: float) -> Vector:
        return await self.embedder.embed(text, deadline)
