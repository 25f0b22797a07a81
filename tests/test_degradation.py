"""
Tests for the stage -> fallback table.
"""

from __future__ import annotations

import pytest

from notification_triage.engine.degradation import (
    CLASSIFIER,
    DEDUP,
    EMBEDDING,
    FATIGUE,
    PREFERENCES,
    RECORD,
    DegradationPolicy,
)
from notification_triage.engine.errors import DependencyTimeout, DependencyUnavailable
from notification_triage.engine.models import Verdict
from tests.conftest import make_event

OUTAGE = DependencyUnavailable("history store", "connection refused")
TIMEOUT = DependencyTimeout("classifier", 0.3)


class TestDegradationPolicy:
    def test_every_stage_has_a_reason(self):
        policy = DegradationPolicy()

        for stage in (PREFERENCES, DEDUP, EMBEDDING, FATIGUE, CLASSIFIER, RECORD):
            fallback = policy.handle(stage, OUTAGE, make_event())
            assert fallback.stage == stage
            assert fallback.reason

    def test_unknown_stage(self):
        with pytest.raises(KeyError):
            DegradationPolicy().handle("telepathy", OUTAGE, make_event())

    @pytest.mark.parametrize(
        "priority, exceeded",
        [("low", True), ("medium", True), ("high", False), ("critical", False)],
    )
    def test_fatigue_fails_closed_below_high(self, priority, exceeded):
        fallback = DegradationPolicy().handle(FATIGUE, OUTAGE, make_event(priority_hint=priority))

        assert fallback.exceeded is exceeded

    def test_classifier_uses_configured_verdict(self):
        fallback = DegradationPolicy(Verdict.SUPPRESS).handle(CLASSIFIER, TIMEOUT, make_event())

        assert fallback.verdict == Verdict.SUPPRESS
        assert fallback.kind == "timeout"
        assert fallback.reason == "classifier fallback (timeout): NEVER"

    def test_timeout_and_outage_differ_only_in_text(self):
        policy = DegradationPolicy()
        a = policy.handle(CLASSIFIER, OUTAGE, make_event())
        b = policy.handle(CLASSIFIER, TIMEOUT, make_event())

        assert a.verdict == b.verdict == Verdict.DEFER
        assert a.reason != b.reason
