"""
Scheduler — computes scheduled_for for LATER decisions.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from notification_triage.engine.models import EvaluationContext, NotificationEvent
from notification_triage.engine.rules import DeferPolicy


class Scheduler:
    def __init__(self, default_delay_minutes: int = 15, digest_hour: int = 18):
        self.default_delay_minutes = default_delay_minutes
        self.digest_hour = digest_hour

    def schedule(
        self,
        event: NotificationEvent,
        context: EvaluationContext,
        now: datetime,
        policy: Optional[DeferPolicy] = None,
        retry_after: Optional[float] = None,
    ) -> Tuple[datetime, bool]:
        """
        Returns (scheduled_for, clamped). `clamped` is True when the
        delivery time had to be pulled back to the event's expiry.

        Logic:
        - fatigue window → when the exceeded counter resets
        - delay → +N minutes (default 15)
        - next_hour → top of the next hour
        - digest → next digest hour
        - dnd_end → end of do-not-disturb
        Active do-not-disturb pushes any of these to its end.
        """
        if retry_after is not None:
            scheduled = now + timedelta(seconds=retry_after)
        elif policy is None or policy.kind == "delay":
            minutes = policy.minutes if policy and policy.minutes is not None else self.default_delay_minutes
            scheduled = now + timedelta(minutes=minutes)
        elif policy.kind == "next_hour":
            scheduled = _next_hour(now)
        elif policy.kind == "digest":
            scheduled = self._next_digest(now)
        else:
            scheduled = context.dnd_until or now + timedelta(minutes=self.default_delay_minutes)

        if context.dnd_active and context.dnd_until and context.dnd_until > scheduled:
            scheduled = context.dnd_until

        if event.expires_at and scheduled > event.expires_at:
            return max(now, event.expires_at), True
        return scheduled, False

    def _next_digest(self, now: datetime) -> datetime:
        slot = now.replace(hour=self.digest_hour, minute=0, second=0, microsecond=0)
        if slot <= now:
            slot += timedelta(days=1)
        return slot


def _next_hour(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
