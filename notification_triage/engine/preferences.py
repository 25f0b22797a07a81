"""
User preferences — do-not-disturb window and opted-out channels.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional, Protocol

from notification_triage.engine.errors import DependencyUnavailable


@dataclass(frozen=True)
class UserPreferences:
    dnd_until: Optional[datetime] = None
    opted_out_channels: FrozenSet[str] = frozenset()

    def dnd_active(self, now: datetime) -> bool:
        return self.dnd_until is not None and now < self.dnd_until


class PreferenceStore(Protocol):
    def get(self, user_id: str) -> UserPreferences: ...


class InMemoryPreferenceStore:
    def __init__(self):
        self._prefs: Dict[str, UserPreferences] = {}
        self.available = True

    def get(self, user_id: str) -> UserPreferences:
        if not self.available:
            raise DependencyUnavailable("preference store", "connection refused")
        return self._prefs.get(user_id, UserPreferences())

    def set_dnd(self, user_id: str, until: Optional[datetime]):
        current = self._prefs.get(user_id, UserPreferences())
        self._prefs[user_id] = UserPreferences(until, current.opted_out_channels)

    def opt_out(self, user_id: str, channels: Iterable[str]):
        current = self._prefs.get(user_id, UserPreferences())
        self._prefs[user_id] = UserPreferences(
            current.dnd_until, current.opted_out_channels | frozenset(channels)
        )
