"""Tests for client-side session pointer caches."""

import json

import pytest

from funnel.pointer_cache import InMemoryPointerCache, JsonFilePointerCache


@pytest.fixture(params=["memory", "file"])
def cache(request, tmp_path):
    if request.param == "memory":
        return InMemoryPointerCache()
    return JsonFilePointerCache(tmp_path / "pointers.json")


class TestPointerCache:

    def test_get_missing(self, cache):
        assert cache.get("funnel_1") is None

    def test_set_get_remove(self, cache):
        cache.set("funnel_1", "flow_abc")
        assert cache.get("funnel_1") == "flow_abc"
        cache.remove("funnel_1")
        assert cache.get("funnel_1") is None

    def test_pointers_are_per_funnel(self, cache):
        cache.set("funnel_1", "flow_a")
        cache.set("funnel_2", "flow_b")
        cache.remove("funnel_1")
        assert cache.get("funnel_2") == "flow_b"

    def test_key_scheme(self, cache):
        assert cache.key_for("funnel_1") == "funnel_session_funnel_1"


class TestJsonFilePointerCache:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "pointers.json"
        JsonFilePointerCache(path).set("funnel_1", "flow_abc")

        assert JsonFilePointerCache(path).get("funnel_1") == "flow_abc"
        assert json.loads(path.read_text()) == {"funnel_session_funnel_1": "flow_abc"}

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "pointers.json"
        path.write_text("{not json")
        cache = JsonFilePointerCache(path)

        assert cache.get("funnel_1") is None
        cache.set("funnel_1", "flow_new")
        assert cache.get("funnel_1") == "flow_new"

    def test_non_string_entry_ignored(self, tmp_path):
        path = tmp_path / "pointers.json"
        path.write_text(json.dumps({"funnel_session_funnel_1": 42}))
        assert JsonFilePointerCache(path).get("funnel_1") is None


class TestCreatePointerCache:

    def test_uses_configured_prefix(self, monkeypatch, tmp_path):
        from config.settings import get_funnel_settings
        from funnel.pointer_cache import create_pointer_cache

        monkeypatch.setenv("FUNNEL_POINTER_KEY_PREFIX", "fs_")
        get_funnel_settings.cache_clear()

        assert create_pointer_cache().key_for("funnel_1") == "fs_funnel_1"
        file_cache = create_pointer_cache(tmp_path / "p.json")
        assert isinstance(file_cache, JsonFilePointerCache)
        assert file_cache.key_for("funnel_1") == "fs_funnel_1"

    def test_defaults_to_memory(self):
        from funnel.pointer_cache import create_pointer_cache
        assert isinstance(create_pointer_cache(), InMemoryPointerCache)
