"""
Shared fixtures for the triage test suite.

Provides factory functions for events, a controllable clock, a scripted
classifier port and a fully wired orchestrator backed by in-memory stores.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from notification_triage.config import TriageSettings
from notification_triage.engine.classifier import BoundedClassifier, HashingEmbedder
from notification_triage.engine.models import ClassifierResult, NotificationEvent, Verdict
from notification_triage.engine.orchestrator import DecisionOrchestrator
from notification_triage.engine.preferences import InMemoryPreferenceStore
from notification_triage.engine.snapshots import RuleRegistry, StaticConfigProvider
from notification_triage.engine.store import InMemoryHistoryStore

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def make_event(**overrides: Any) -> NotificationEvent:
    """
    Create a NotificationEvent with sensible defaults.

    Args:
        **overrides: Any NotificationEvent field

    Returns:
        NotificationEvent
    """
    fields: dict[str, Any] = {
        "user_id": "u1",
        "event_type": "message",
        "channel": "push",
        "message": "You have a new message",
        "source": "messaging",
        "priority_hint": "medium",
        "received_at": T0,
    }
    fields.update(overrides)
    return NotificationEvent(**fields)


def make_settings(**overrides: Any) -> TriageSettings:
    """Settings isolated from the environment and any .env file."""
    return TriageSettings(_env_file=None, **overrides)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedPort:
    """
    ClassifierPort test double.

    classify() returns `result`, raises `error`, or sleeps `delay` seconds
    first. embed() looks texts up in `vectors` and falls back to hashing.
    """

    def __init__(
        self,
        result: ClassifierResult | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        vectors: dict[str, tuple[float, ...]] | None = None,
        embed_delay: float = 0.0,
    ):
        self.result = result or ClassifierResult(Verdict.SEND_NOW, 0.87)
        self.error = error
        self.delay = delay
        self.vectors = vectors or {}
        self.embed_delay = embed_delay
        self.classify_calls = 0
        self.cancelled = False
        self._hashing = HashingEmbedder()

    async def classify(self, event, context, deadline):
        self.classify_calls += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error:
            raise self.error
        return self.result

    async def embed(self, text, deadline):
        if self.embed_delay:
            await asyncio.sleep(self.embed_delay)
        if text in self.vectors:
            return self.vectors[text]
        return await self._hashing.embed(text, deadline)


class Harness:
    """An orchestrator plus handles on every in-memory collaborator."""

    def __init__(self, port=None, rules=None, settings=None, clock=None):
        self.settings = settings or make_settings()
        self.clock = clock or FakeClock()
        self.store = InMemoryHistoryStore()
        self.preferences = InMemoryPreferenceStore()
        self.provider = StaticConfigProvider(rules)
        self.registry = RuleRegistry(self.provider)
        self.port = port or ScriptedPort()
        self.classifier = BoundedClassifier(
            self.port,
            timeout=self.settings.classifier_timeout,
            embedding_timeout=self.settings.embedding_timeout,
        )
        self.sent: list = []
        self.orchestrator = DecisionOrchestrator(
            store=self.store,
            registry=self.registry,
            classifier=self.classifier,
            preferences=self.preferences,
            settings=self.settings,
            sinks=[self.sent.append],
            clock=self.clock,
        )

    async def evaluate(self, **overrides: Any):
        overrides.setdefault("received_at", self.clock())
        return await self.orchestrator.evaluate(make_event(**overrides))

    def fill_sends(self, user_id: str, count: int, channel: str = "push") -> None:
        for i in range(count):
            self.orchestrator.fatigue.record_send(
                make_event(user_id=user_id, channel=channel, message=f"filler {i}"), self.clock()
            )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness() -> Harness:
    return Harness()
