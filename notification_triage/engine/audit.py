"""
Audit Log — in-memory store of every Decision.
In production: write to the notification_decisions table.
"""

from collections import deque
from typing import Deque, Dict, List, Optional

from notification_triage.engine.models import Decision, Verdict


class AuditLog:
    def __init__(self, max_records: Optional[int] = 10000):
        self._log: Deque[Decision] = deque(maxlen=max_records)

    def __call__(self, decision: Decision):
        self.record(decision)

    def record(self, decision: Decision):
        self._log.append(decision)

    def get_user_history(self, user_id: str, verdict: Optional[Verdict] = None, limit: int = 50) -> List[Decision]:
        results = [d for d in self._log if d.user_id == user_id]
        if verdict:
            results = [d for d in results if d.verdict == verdict]
        return results[-limit:] if limit > 0 else []

    def get_digest(self, digest_key: str) -> List[Decision]:
        return [d for d in self._log if d.digest_key == digest_key]

    def get_all(self) -> List[Decision]:
        return list(self._log)

    def stats(self) -> Dict:
        total = len(self._log)
        by_verdict = {v.value: 0 for v in Verdict}
        fallbacks = 0
        for d in self._log:
            by_verdict[d.verdict.value] += 1
            fallbacks += d.fallback_mode
        return {
            "total_evaluated": total,
            "by_verdict": by_verdict,
            "suppression_rate": round(by_verdict["NEVER"] / max(total, 1) * 100, 1),
            "deferred_rate": round(by_verdict["LATER"] / max(total, 1) * 100, 1),
            "fallback_rate": round(fallbacks / max(total, 1) * 100, 1),
        }

    def clear(self):
        self._log.clear()
