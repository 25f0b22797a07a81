"""
Rule snapshots and the config providers that feed them.

RuleRegistry holds one immutable RuleSnapshot reference. A refresh builds
a complete new snapshot and swaps the reference in a single assignment,
so an evaluation that grabbed `registry.current` keeps using that snapshot
until it finishes. A failed or stale refresh keeps the last good one.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import json
import os
import threading
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple

from notification_triage.engine.errors import DependencyUnavailable, RuleConfigError
from notification_triage.engine.models import utcnow
from notification_triage.engine.rules import DEFAULT_RULES, RuleSpec, parse_rules
from notification_triage.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RuleDocument:
    version: int
    rules: Tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class RuleSnapshot:
    version: int
    rules: Tuple[RuleSpec, ...]
    loaded_at: datetime = field(default_factory=utcnow)


class ConfigProvider(Protocol):
    def fetch(self) -> RuleDocument: ...


class StaticConfigProvider:
    """In-memory provider; publish() bumps the version."""

    def __init__(self, rules: Optional[Sequence[Mapping[str, Any]]] = None, version: int = 1):
        self._lock = threading.Lock()
        self._doc = RuleDocument(version, tuple(DEFAULT_RULES if rules is None else rules))
        self.available = True

    def fetch(self) -> RuleDocument:
        if not self.available:
            raise DependencyUnavailable("config provider", "connection refused")
        return self._doc

    def publish(self, rules: Sequence[Mapping[str, Any]]) -> int:
        with self._lock:
            self._doc = RuleDocument(self._doc.version + 1, tuple(rules))
            return self._doc.version


class JsonFileConfigProvider:
    """
    Reads {"version": 7, "rules": [...]} or a bare rule list. Without an
    explicit version the file's mtime (ns) is used, which only grows.
    """

    def __init__(self, path: str):
        self.path = path

    def fetch(self) -> RuleDocument:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            mtime = os.stat(self.path).st_mtime_ns
        except OSError as e:
            raise DependencyUnavailable("config provider", str(e)) from e
        except json.JSONDecodeError as e:
            raise RuleConfigError(f"{self.path} is not valid JSON: {e}") from e

        if isinstance(data, list):
            return RuleDocument(mtime, tuple(data))
        if isinstance(data, dict) and isinstance(data.get("rules"), list):
            version = data.get("version", mtime)
            if isinstance(version, bool) or not isinstance(version, int):
                raise RuleConfigError(f"{self.path}: version must be an integer")
            return RuleDocument(version, tuple(data["rules"]))
        raise RuleConfigError(f"{self.path}: expected a rule list or an object with 'rules'")


class RuleRegistry:
    def __init__(self, provider: ConfigProvider):
        self.provider = provider
        self._snapshot = RuleSnapshot(version=0, rules=())
        self._refresh_lock = threading.Lock()
        self.last_error: Optional[str] = None

    @property
    def current(self) -> RuleSnapshot:
        return self._snapshot

    def refresh(self) -> bool:
        """Pull from the provider. Returns True if a newer snapshot was installed."""
        with self._refresh_lock:
            try:
                doc = self.provider.fetch()
                if doc.version <= self._snapshot.version:
                    return False
                snapshot = RuleSnapshot(version=doc.version, rules=parse_rules(doc.rules))
            except (DependencyUnavailable, RuleConfigError) as e:
                self.last_error = str(e)
                logger.warning(
                    "Rule refresh failed, keeping snapshot v%s: %s", self._snapshot.version, e
                )
                return False

            self._snapshot = snapshot
            self.last_error = None
            logger.info("Installed rule snapshot v%s (%d rules)", snapshot.version, len(snapshot.rules))
            return True

    def notify(self) -> bool:
        """Push signal from the provider side."""
        return self.refresh()

    async def run_polling(self, interval: float, stop: Optional[asyncio.Event] = None):
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await asyncio.to_thread(self.refresh)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
