"""
Tests for the in-memory audit log.
"""

from __future__ import annotations

from notification_triage.engine.audit import AuditLog
from notification_triage.engine.models import Decision, Verdict


def decision(user_id="u1", verdict=Verdict.SEND_NOW, **kwargs):
    return Decision(event_id=f"e-{user_id}-{verdict.value}", user_id=user_id, verdict=verdict, reason="r", **kwargs)


class TestAuditLog:
    def test_history_filters_and_limits(self):
        log = AuditLog()
        log.record(decision("u1", Verdict.SEND_NOW))
        log.record(decision("u1", Verdict.SUPPRESS))
        log.record(decision("u2", Verdict.SEND_NOW))
        log(decision("u1", Verdict.SEND_NOW))

        assert len(log.get_user_history("u1")) == 3
        assert len(log.get_user_history("u1", Verdict.SEND_NOW)) == 2
        assert len(log.get_user_history("u1", limit=1)) == 1
        assert log.get_user_history("u1", limit=0) == []

    def test_bounded(self):
        log = AuditLog(max_records=2)
        for user in ("a", "b", "c"):
            log.record(decision(user))

        assert [d.user_id for d in log.get_all()] == ["b", "c"]

    def test_digest_lookup(self):
        log = AuditLog()
        log.record(decision("u1", Verdict.DEFER, digest_key="digest:u1:shop:1"))
        log.record(decision("u2", Verdict.DEFER, digest_key="digest:u1:shop:1"))
        log.record(decision("u3", Verdict.DEFER))

        assert len(log.get_digest("digest:u1:shop:1")) == 2

    def test_stats(self):
        log = AuditLog()
        log.record(decision("a", Verdict.SEND_NOW))
        log.record(decision("b", Verdict.DEFER, fallback_mode=True))
        log.record(decision("c", Verdict.SUPPRESS))
        log.record(decision("d", Verdict.SUPPRESS))

        stats = log.stats()

        assert stats["total_evaluated"] == 4
        assert stats["by_verdict"] == {"NOW": 1, "LATER": 1, "NEVER": 2}
        assert stats["suppression_rate"] == 50.0
        assert stats["deferred_rate"] == 25.0
        assert stats["fallback_rate"] == 25.0

    def test_empty_stats(self):
        assert AuditLog().stats()["suppression_rate"] == 0.0
