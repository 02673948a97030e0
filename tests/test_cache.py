import json

import pytest

from notebooklm_bridge.cache import CacheEntry, SourceCache


@pytest.fixture
def cache(tmp_path):
    return SourceCache(tmp_path / "nested" / "cache.json")


class TestSourceCache:
    def test_missing_file_is_empty(self, cache):
        assert cache.get("https://example.com/v1") is None
        assert cache.all() == {}

    def test_set_writes_indented_json(self, cache):
        cache.set("https://example.com/v1", CacheEntry("N1", "S1"))

        text = cache.path.read_text()
        assert "\n  " in text
        assert json.loads(text) == {"https://example.com/v1": {"workspaceId": "N1", "sourceId": "S1"}}

    def test_references_are_not_normalized(self, cache):
        cache.set("https://example.com/v1", CacheEntry("N1", "S1"))
        assert cache.get("https://example.com/v1/") is None

    def test_write_rereads_file(self, cache):
        cache.set("a", CacheEntry("N1", "S1"))
        # Another writer touched the file in between
        data = json.loads(cache.path.read_text())
        data["b"] = {"workspaceId": "N2", "sourceId": "S2"}
        cache.path.write_text(json.dumps(data))

        cache.set("c", CacheEntry("N3", "S3"))

        assert set(cache.all()) == {"a", "b", "c"}

    def test_corrupt_file_is_treated_as_empty(self, cache):
        cache.path.parent.mkdir(parents=True)
        cache.path.write_text("{not json")
        assert cache.get("a") is None

        cache.set("a", CacheEntry("N1", "S1"))
        assert cache.get("a") == CacheEntry("N1", "S1")

    def test_remove_and_find_by_workspace(self, cache):
        cache.set("a", CacheEntry("N1", "S1"))
        cache.set("b", CacheEntry("N1", "S2"))
        cache.set("c", CacheEntry("N2", "S3"))

        assert cache.find_by_workspace("N1") == ["a", "b"]
        assert cache.remove("a") is True
        assert cache.remove("a") is False
        assert cache.find_by_workspace("N1") == ["b"]


class TestLegacyEntries:
    """Files written by older versions."""

    def test_bare_notebook_id(self):
        entry = CacheEntry.from_value("N1")
        assert entry == CacheEntry("N1", None)
        assert not entry.is_complete

    def test_legacy_keys(self):
        assert CacheEntry.from_value({"notebookId": "N1", "source_id": "S1"}) == CacheEntry("N1", "S1")
        assert CacheEntry.from_value({"notebook_id": "N1"}) == CacheEntry("N1", None)

    def test_unusable_values(self):
        assert CacheEntry.from_value(None) is None
        assert CacheEntry.from_value({"sourceId": "S1"}) is None
        assert CacheEntry.from_value(42) is None

    def test_workspace_only_entry_omits_source(self):
        assert CacheEntry("N1").to_dict() == {"workspaceId": "N1"}
