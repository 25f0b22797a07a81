"""
Fatigue tracker — per-user send counters with a post-burst cooldown.

The gate reserves its slot atomically so concurrent evaluations for one
user cannot overshoot a cap. Only a final SEND-NOW keeps the slot;
deferred and suppressed traffic never counts against the user.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from notification_triage.engine.models import EvaluationContext, NotificationEvent
from notification_triage.engine.store import HistoryStore

HOUR = 3600

COOLDOWN = "cooldown"
CHANNEL = "channel"
GLOBAL = "global"


@dataclass(frozen=True)
class FatigueVerdict:
    exceeded: bool = False
    scope: Optional[str] = None
    count: int = 0
    cap: int = 0
    reserved: bool = False


class FatigueTracker:
    def __init__(
        self,
        store: HistoryStore,
        channel_caps: Optional[Dict[str, int]] = None,
        default_channel_cap: int = 5,
        global_cap: int = 15,
        burst_threshold: int = 4,
        burst_window_minutes: int = 10,
        cooldown_seconds: int = 1800,
    ):
        self.store = store
        self.channel_caps = dict(channel_caps or {})
        self.default_channel_cap = default_channel_cap
        self.global_cap = global_cap
        self.burst_threshold = burst_threshold
        self.burst_window_seconds = burst_window_minutes * 60
        self.cooldown_seconds = cooldown_seconds

    # ── Keys ──────────────────────────────────────────────────
    @staticmethod
    def _channel_key(user_id: str, channel: str) -> str:
        return f"fatigue:{user_id}:ch:{channel}:1h"

    @staticmethod
    def _global_key(user_id: str) -> str:
        return f"fatigue:{user_id}:all:1h"

    @staticmethod
    def _burst_key(user_id: str) -> str:
        return f"fatigue:{user_id}:burst"

    @staticmethod
    def _cooldown_key(user_id: str) -> str:
        return f"fatigue:{user_id}:cooldown"

    @staticmethod
    def _last_sent_key(user_id: str) -> str:
        return f"fatigue:{user_id}:last_sent"

    def channel_cap(self, channel: str) -> int:
        return self.channel_caps.get(channel, self.default_channel_cap)

    def load(self, event: NotificationEvent, context: EvaluationContext):
        """Copy the user's counters into the context."""
        user = event.user_id
        context.channel_count_1h = self.store.get_count(self._channel_key(user, event.channel))
        context.recent_count_1h = self.store.get_count(self._global_key(user))
        context.recent_count_window = self.store.get_count(self._burst_key(user))
        context.in_cooldown = self.store.exists(self._cooldown_key(user))
        last_sent = self.store.get(self._last_sent_key(user))
        context.last_sent_at = (
            datetime.fromtimestamp(last_sent, tz=timezone.utc) if last_sent is not None else None
        )

    def evaluate(self, event: NotificationEvent, context: EvaluationContext) -> FatigueVerdict:
        """
        Check the caps and, when under them, reserve one slot on the channel
        and global counters with INCR. A reserved slot is either confirmed by
        commit_send() or handed back by release().
        """
        self.load(event, context)

        if context.in_cooldown:
            return FatigueVerdict(True, COOLDOWN, context.recent_count_window, self.burst_threshold)

        user = event.user_id
        channel_key = self._channel_key(user, event.channel)
        cap = self.channel_cap(event.channel)
        count = self.store.incr(channel_key, HOUR)
        if count > cap:
            self.store.decr(channel_key)
            return FatigueVerdict(True, CHANNEL, count - 1, cap)

        global_key = self._global_key(user)
        total = self.store.incr(global_key, HOUR)
        if total > self.global_cap:
            self.store.decr(global_key)
            self.store.decr(channel_key)
            return FatigueVerdict(True, GLOBAL, total - 1, self.global_cap)

        return FatigueVerdict(reserved=True)

    def release(self, event: NotificationEvent):
        """Hand back a slot reserved by evaluate()."""
        self.store.decr(self._channel_key(event.user_id, event.channel))
        self.store.decr(self._global_key(event.user_id))

    def retry_after(self, event: NotificationEvent, scope: str) -> Optional[float]:
        """Seconds until the counter behind `scope` resets."""
        key = {
            COOLDOWN: self._cooldown_key(event.user_id),
            CHANNEL: self._channel_key(event.user_id, event.channel),
            GLOBAL: self._global_key(event.user_id),
        }[scope]
        return self.store.ttl(key)

    def commit_send(self, event: NotificationEvent, now: datetime):
        """Confirm a reserved slot: bump the burst counter and last-sent time."""
        user = event.user_id
        burst = self.store.incr(self._burst_key(user), self.burst_window_seconds)
        if burst >= self.burst_threshold:
            self.store.set_if_absent(self._cooldown_key(user), now.timestamp(), self.cooldown_seconds)
        self.store.set(self._last_sent_key(user), now.timestamp(), 24 * HOUR)

    def record_send(self, event: NotificationEvent, now: datetime):
        """Count a send that never reserved a slot, e.g. one that overrode the caps."""
        self.store.incr(self._channel_key(event.user_id, event.channel), HOUR)
        self.store.incr(self._global_key(event.user_id), HOUR)
        self.commit_send(event, now)
