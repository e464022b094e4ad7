"""
Tests for the durable JSON tier snapshots.
"""
import json
import logging

from pipeline_dashboard.cache.core import CacheEntry, Tier
from pipeline_dashboard.cache.store import DurableCacheStore, JsonTierStore


def _entry(value, timestamp=1_700_000_000.0, duration=None):
    return CacheEntry(value=value, timestamp=timestamp, tier=Tier.BRANCHES, duration=duration)


def test_missing_file_loads_empty(tmp_path):
    store = JsonTierStore(tmp_path / "branches.json", Tier.BRANCHES)
    assert store.load() == {}


def test_save_then_load_restores_entries(tmp_path):
    store = JsonTierStore(tmp_path / "branches.json", Tier.BRANCHES)
    entries = {
        "group/app": _entry([{"name": "main"}], duration=1.5),
        "group/lib": _entry([]),
    }

    assert store.save(entries) is True
    loaded = store.load()

    assert set(loaded) == {"group/app", "group/lib"}
    assert loaded["group/app"].value == [{"name": "main"}]
    assert loaded["group/app"].timestamp == 1_700_000_000.0
    assert loaded["group/app"].duration == 1.5
    assert loaded["group/lib"].duration is None
    assert loaded["group/app"].tier is Tier.BRANCHES


def test_snapshot_document_format(tmp_path):
    """Timestamps and durations are stored in milliseconds."""
    path = tmp_path / "branches.json"
    JsonTierStore(path, Tier.BRANCHES).save({"group/app": _entry(["main"], duration=0.25)})

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document == {
        "group/app": {"timestamp": 1_700_000_000_000, "data": ["main"], "duration": 250},
    }


def test_save_leaves_no_temp_files(tmp_path):
    store = JsonTierStore(tmp_path / "branches.json", Tier.BRANCHES)
    store.save({"a": _entry(1)})
    store.save({"a": _entry(2)})
    assert [p.name for p in tmp_path.iterdir()] == ["branches.json"]


def test_corrupt_file_fails_open_for_whole_tier(tmp_path, caplog):
    """A torn document makes every key in the tier absent, without raising."""
    path = tmp_path / "branches.json"
    path.write_text('{"group/app": {"timestamp": 17000', encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="cache.store"):
        assert JsonTierStore(path, Tier.BRANCHES).load() == {}
    assert "unreadable" in caplog.text


def test_non_object_document_loads_empty(tmp_path):
    path = tmp_path / "branches.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert JsonTierStore(path, Tier.BRANCHES).load() == {}


def test_malformed_entry_is_skipped(tmp_path):
    path = tmp_path / "branches.json"
    path.write_text(json.dumps({
        "good": {"timestamp": 1_700_000_000_000, "data": ["main"]},
        "no-data": {"timestamp": 1_700_000_000_000},
        "bad-timestamp": {"timestamp": "yesterday", "data": []},
    }), encoding="utf-8")

    loaded = JsonTierStore(path, Tier.BRANCHES).load()
    assert list(loaded) == ["good"]


def test_save_failure_is_swallowed(tmp_path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = JsonTierStore(blocker / "branches.json", Tier.BRANCHES)

    with caplog.at_level(logging.ERROR, logger="cache.store"):
        assert store.save({"a": _entry(1)}) is False
    assert "Error writing" in caplog.text


def test_unserialisable_value_is_swallowed(tmp_path):
    store = JsonTierStore(tmp_path / "branches.json", Tier.BRANCHES)
    assert store.save({"a": _entry(object())}) is False
    assert list(tmp_path.iterdir()) == []


def test_durable_store_has_one_file_per_tier(tmp_path):
    store = DurableCacheStore(tmp_path)
    paths = {tier: store.for_tier(tier).path.name for tier in Tier}
    assert paths == {
        Tier.STRUCTURE: "groups-projects.json",
        Tier.BRANCHES: "branches.json",
        Tier.PIPELINES: "pipelines.json",
        Tier.STATISTICS: "pipeline-statistics.json",
    }


def test_clear_removes_tier_files(tmp_path):
    store = DurableCacheStore(tmp_path)
    store.for_tier(Tier.BRANCHES).save({"a": _entry(1)})
    store.for_tier(Tier.PIPELINES).save({"b": _entry(2)})

    assert store.clear() == 2
    assert list(tmp_path.iterdir()) == []
    assert store.clear() == 0
