"""Tests for cache.py."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import json

import pytest

import cache
from cache import Channel, KeyValueStore
from m3u import ParsedChannel


@pytest.fixture
def cache_module(tmp_path: Path):
    """Point cache file locations at temp paths."""
    original_settings = cache.SERVER_SETTINGS_FILE
    original_store = cache.STORE_FILE
    cache.SERVER_SETTINGS_FILE = tmp_path / "server_settings.json"
    cache.STORE_FILE = tmp_path / "store.json"

    yield cache

    cache.SERVER_SETTINGS_FILE = original_settings
    cache.STORE_FILE = original_store


@pytest.fixture
def store(tmp_path: Path) -> KeyValueStore:
    return KeyValueStore(tmp_path / "store.json")


class TestKeyValueStore:
    def test_get_missing_returns_none(self, store):
        assert store.get("nope") is None

    def test_set_get_remove(self, store):
        store.set("k", "v")
        assert store.get("k") == "v"
        store.remove("k")
        assert store.get("k") is None

    def test_remove_missing_is_noop(self, store):
        store.remove("missing")
        assert not store.path.exists()

    def test_persists_across_instances(self, store):
        store.set("k", "v")
        assert KeyValueStore(store.path).get("k") == "v"

    def test_json_helpers(self, store):
        store.set_json("data", {"a": [1, 2]})
        assert store.get_json("data") == {"a": [1, 2]}
        assert json.loads(store.get("data")) == {"a": [1, 2]}

    def test_get_json_default(self, store):
        assert store.get_json("missing", []) == []

    def test_get_json_corrupt_value_returns_default(self, store):
        store.set("bad", "{not json")
        assert store.get_json("bad", "fallback") == "fallback"

    def test_corrupt_file_starts_empty(self, store):
        store.path.write_text("not valid json")
        assert store.get("k") is None
        store.set("k", "v")
        assert store.get("k") == "v"

    def test_no_temp_file_left(self, store):
        store.set("k", "v")
        assert not store.path.with_suffix(".tmp").exists()


class TestGetStore:
    def test_returns_same_instance(self, cache_module):
        assert cache_module.get_store() is cache_module.get_store()

    def test_follows_store_file(self, cache_module, tmp_path):
        first = cache_module.get_store()
        cache_module.STORE_FILE = tmp_path / "other.json"
        second = cache_module.get_store()
        assert second is not first
        assert second.path == tmp_path / "other.json"


class TestServerSettings:
    def test_load_defaults(self, cache_module):
        settings = cache_module.load_server_settings()
        assert settings["admin_password_hash"] == ""
        assert settings["relay_timeout"] == 20
        assert settings["user_agent"] == ""

    def test_save_and_load(self, cache_module):
        settings = cache_module.load_server_settings()
        settings["relay_timeout"] = 5
        cache_module.save_server_settings(settings)
        assert cache_module.load_server_settings()["relay_timeout"] == 5


class TestPlaylists:
    def test_empty(self, store):
        assert cache.get_playlists(store) == []

    def test_add_and_get(self, store):
        p = cache.add_playlist(store, "Free TV", "http://a.com/list.m3u", "desc", "News", "")
        assert p.id.startswith("pl_")
        assert p.created_at
        playlists = cache.get_playlists(store)
        assert playlists == [p]
        assert cache.get_playlist(store, p.id) == p

    def test_get_unknown(self, store):
        assert cache.get_playlist(store, "pl_missing") is None

    def test_order_is_insertion(self, store):
        a = cache.add_playlist(store, "A", "http://a.com/a.m3u")
        b = cache.add_playlist(store, "B", "http://a.com/b.m3u")
        assert [p.id for p in cache.get_playlists(store)] == [a.id, b.id]

    def test_update_keeps_id_and_created_at(self, store):
        p = cache.add_playlist(store, "A", "http://a.com/a.m3u")
        assert cache.update_playlist(
            store, p.id, name="B", url="http://b.com/b.m3u", id="hijack", created_at="x"
        )
        updated = cache.get_playlist(store, p.id)
        assert updated.name == "B"
        assert updated.url == "http://b.com/b.m3u"
        assert updated.created_at == p.created_at

    def test_update_unknown(self, store):
        assert not cache.update_playlist(store, "pl_missing", name="x")

    def test_delete(self, store):
        a = cache.add_playlist(store, "A", "http://a.com/a.m3u")
        b = cache.add_playlist(store, "B", "http://a.com/b.m3u")
        assert cache.delete_playlist(store, a.id)
        assert cache.get_playlists(store) == [b]
        assert not cache.delete_playlist(store, a.id)


class TestChannels:
    def test_channel_defaults(self):
        c = Channel(name="A", url="http://s/a", logo=None, group="")
        assert c.logo == ""
        assert c.group == "General"
        assert c.key == ("A", "http://s/a")

    def test_from_dict(self):
        c = Channel.from_dict({"name": "A", "url": "http://s/a", "group": None, "extra": 1})
        assert c == Channel(name="A", url="http://s/a")

    def test_append_parsed_channels(self, store):
        parsed = [
            ParsedChannel(name="A", url="http://s/a", logo="http://l/a.png", group="News"),
            ParsedChannel(name="B", url="http://s/b", language="English"),
        ]
        assert cache.append_channels(store, parsed) == 2
        assert cache.get_channels(store) == [
            Channel(name="A", url="http://s/a", logo="http://l/a.png", group="News"),
            Channel(name="B", url="http://s/b"),
        ]

    def test_append_merges(self, store):
        cache.append_channels(store, [ParsedChannel(name="A", url="http://s/a")])
        cache.append_channels(store, [ParsedChannel(name="A", url="http://s/a")])
        assert len(cache.get_channels(store)) == 2

    def test_clear(self, store):
        cache.append_channels(store, [ParsedChannel(name="A", url="http://s/a")])
        cache.clear_channels(store)
        assert cache.get_channels(store) == []

    def test_categories(self):
        channels = [
            Channel("A", "u1", group="News"),
            Channel("B", "u2", group="Sports"),
            Channel("C", "u3", group="News"),
            Channel("D", "u4"),
        ]
        assert cache.get_categories(channels) == ["All", "News", "Sports", "General"]

    def test_categories_empty(self):
        assert cache.get_categories([]) == ["All"]


class TestFilterChannels:
    CHANNELS = [
        Channel("BBC News", "u1", group="News"),
        Channel("Sky Sports", "u2", group="Sports"),
        Channel("Cartoons", "u3", group="Kids"),
    ]

    def test_no_filter(self):
        assert cache.filter_channels(self.CHANNELS) == self.CHANNELS

    def test_query_matches_name_case_insensitive(self):
        assert [c.name for c in cache.filter_channels(self.CHANNELS, "bbc")] == ["BBC News"]

    def test_query_matches_group(self):
        assert [c.name for c in cache.filter_channels(self.CHANNELS, "KIDS")] == ["Cartoons"]

    def test_category(self):
        result = cache.filter_channels(self.CHANNELS, category="Sports")
        assert [c.name for c in result] == ["Sky Sports"]

    def test_query_and_category(self):
        assert cache.filter_channels(self.CHANNELS, "news", "Sports") == []


class TestFavorites:
    def test_toggle_adds_then_removes(self, store):
        c = Channel("A", "http://s/a", group="News")
        assert cache.toggle_favorite(store, c) is True
        assert cache.get_favorites(store) == [c]
        assert cache.is_favorite(store, c)
        assert cache.toggle_favorite(store, c) is False
        assert cache.get_favorites(store) == []
        assert not cache.is_favorite(store, c)

    def test_match_on_name_and_url_only(self, store):
        cache.toggle_favorite(store, Channel("A", "http://s/a", group="News"))
        assert cache.is_favorite(store, Channel("A", "http://s/a", group="Other"))
        assert not cache.is_favorite(store, Channel("A", "http://s/other"))
        assert not cache.is_favorite(store, Channel("B", "http://s/a"))

    def test_same_url_different_name_are_separate(self, store):
        cache.toggle_favorite(store, Channel("A", "http://s/a"))
        cache.toggle_favorite(store, Channel("B", "http://s/a"))
        assert len(cache.get_favorites(store)) == 2


class TestHistory:
    def test_record_and_get(self, store):
        cache.record_play(store, Channel("A", "http://s/a"))
        cache.record_play(store, Channel("B", "http://s/b"))
        history = cache.get_history(store)
        assert [h["name"] for h in history] == ["B", "A"]
        assert history[0]["played_at"] > 0

    def test_replay_moves_to_front(self, store):
        cache.record_play(store, Channel("A", "http://s/a"))
        cache.record_play(store, Channel("B", "http://s/b"))
        cache.record_play(store, Channel("A", "http://s/a"))
        assert [h["name"] for h in cache.get_history(store)] == ["A", "B"]

    def test_capped(self, store):
        with mock.patch.object(cache, "HISTORY_MAX", 3):
            for i in range(5):
                cache.record_play(store, Channel(f"C{i}", f"http://s/{i}"))
        assert [h["name"] for h in cache.get_history(store)] == ["C4", "C3", "C2"]
