"""
Tests for rule snapshots, config providers and the registry.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from notification_triage.engine.errors import DependencyUnavailable, RuleConfigError
from notification_triage.engine.rules import DEFAULT_RULES
from notification_triage.engine.snapshots import (
    JsonFileConfigProvider,
    RuleRegistry,
    StaticConfigProvider,
)

CATCH_ALL = [{"name": "catch-all", "conditions": [], "action": "LATER"}]


class TestRuleRegistry:
    def test_starts_empty_then_installs(self):
        registry = RuleRegistry(StaticConfigProvider())

        assert registry.current.version == 0
        assert registry.current.rules == ()
        assert registry.refresh() is True
        assert registry.current.version == 1
        assert len(registry.current.rules) == len(DEFAULT_RULES)

    def test_same_version_is_not_reinstalled(self):
        registry = RuleRegistry(StaticConfigProvider())
        registry.refresh()
        first = registry.current

        assert registry.refresh() is False
        assert registry.current is first

    def test_publish_swaps_whole_snapshot(self):
        provider = StaticConfigProvider()
        registry = RuleRegistry(provider)
        registry.refresh()
        held = registry.current

        provider.publish(CATCH_ALL)
        assert registry.notify() is True

        assert registry.current.version == 2
        assert [r.name for r in registry.current.rules] == ["catch-all"]
        # a reference taken earlier is untouched
        assert held.version == 1
        assert len(held.rules) == len(DEFAULT_RULES)

    def test_older_version_is_ignored(self):
        provider = StaticConfigProvider(version=5)
        registry = RuleRegistry(provider)
        registry.refresh()

        registry.provider = StaticConfigProvider(CATCH_ALL, version=3)

        assert registry.refresh() is False
        assert registry.current.version == 5

    def test_provider_outage_keeps_last_good(self):
        provider = StaticConfigProvider()
        registry = RuleRegistry(provider)
        registry.refresh()

        provider.available = False
        provider.publish(CATCH_ALL)

        assert registry.refresh() is False
        assert registry.current.version == 1
        assert "unavailable" in registry.last_error

        provider.available = True
        assert registry.refresh() is True
        assert registry.last_error is None

    def test_invalid_document_keeps_last_good(self):
        provider = StaticConfigProvider()
        registry = RuleRegistry(provider)
        registry.refresh()

        provider.publish([{"name": "broken", "conditions": [], "action": "MAYBE"}])

        assert registry.refresh() is False
        assert registry.current.version == 1
        assert "broken" in registry.last_error

    @pytest.mark.asyncio
    async def test_polling_picks_up_changes_and_stops(self):
        provider = StaticConfigProvider()
        registry = RuleRegistry(provider)
        stop = asyncio.Event()

        task = asyncio.create_task(registry.run_polling(0.01, stop))
        await asyncio.sleep(0.05)
        assert registry.current.version == 1

        provider.publish(CATCH_ALL)
        await asyncio.sleep(0.05)
        assert registry.current.version == 2

        stop.set()
        await asyncio.wait_for(task, timeout=1)


class TestJsonFileConfigProvider:
    def test_versioned_document(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"version": 7, "rules": CATCH_ALL}))

        doc = JsonFileConfigProvider(str(path)).fetch()

        assert doc.version == 7
        assert doc.rules[0]["name"] == "catch-all"

    def test_bare_list_uses_mtime(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(CATCH_ALL))

        doc = JsonFileConfigProvider(str(path)).fetch()

        assert doc.version == path.stat().st_mtime_ns

    def test_missing_file_is_an_outage(self, tmp_path):
        with pytest.raises(DependencyUnavailable):
            JsonFileConfigProvider(str(tmp_path / "absent.json")).fetch()

    @pytest.mark.parametrize("content", ["{not json", '{"rules": "nope"}', '{"version": "7", "rules": []}'])
    def test_bad_documents(self, tmp_path, content):
        path = tmp_path / "rules.json"
        path.write_text(content)

        with pytest.raises(RuleConfigError):
            JsonFileConfigProvider(str(path)).fetch()

    def test_registry_loads_from_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"version": 3, "rules": DEFAULT_RULES}))
        registry = RuleRegistry(JsonFileConfigProvider(str(path)))

        assert registry.refresh() is True
        assert registry.current.version == 3
        assert registry.current.rules[0].name == "Critical Security Alert"
