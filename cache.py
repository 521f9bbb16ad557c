"""Key-value store, settings, playlists, channels, favorites and history."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

import json
import logging
import pathlib
import threading
import time
import uuid

from m3u import DEFAULT_GROUP
from m3u import RELAY_TIMEOUT


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
CACHE_DIR.mkdir(exist_ok=True)
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"
STORE_FILE = CACHE_DIR / "store.json"

# Store keys
PLAYLISTS_KEY = "playlists"
CHANNELS_KEY = "channels"
FAVORITES_KEY = "favorites"
HISTORY_KEY = "history"

HISTORY_MAX = 50


class KeyValueStore:
    """String key-value store persisted as one JSON file.

    Values are opaque strings; get_json/set_json layer typed access on top.
    Every read-modify-write cycle should hold `transaction()`.
    """

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Store %s unreadable, starting empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        # Atomic write: write to temp file then rename
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data))
        tmp.replace(self.path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Discarding corrupt value for %s", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))


_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    """Get the process-wide store (FastAPI dependency)."""
    global _store
    if _store is None or _store.path != STORE_FILE:
        _store = KeyValueStore(STORE_FILE)
    return _store


# =============================================================================
# Server settings
# =============================================================================


def load_server_settings() -> dict[str, Any]:
    """Load server-wide settings."""
    if SERVER_SETTINGS_FILE.exists():
        data: dict[str, Any] = json.loads(SERVER_SETTINGS_FILE.read_text())
    else:
        data = {}
    data.setdefault("admin_password_hash", "")  # Empty = built-in default password
    data.setdefault("relay_timeout", RELAY_TIMEOUT)
    data.setdefault("user_agent", "")  # Empty = m3u.USER_AGENT
    return data


def save_server_settings(settings: dict[str, Any]) -> None:
    """Save server-wide settings."""
    SERVER_SETTINGS_FILE.write_text(json.dumps(settings, indent=2))


# =============================================================================
# Playlists
# =============================================================================


@dataclass(slots=True)
class Playlist:
    id: str
    name: str
    url: str
    description: str = ""
    category: str = ""
    logo: str = ""
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


def get_playlists(store: KeyValueStore) -> list[Playlist]:
    """Get registered playlists, oldest first."""
    return [Playlist(**p) for p in store.get_json(PLAYLISTS_KEY, [])]


def get_playlist(store: KeyValueStore, playlist_id: str) -> Playlist | None:
    return next((p for p in get_playlists(store) if p.id == playlist_id), None)


def add_playlist(
    store: KeyValueStore,
    name: str,
    url: str,
    description: str = "",
    category: str = "",
    logo: str = "",
) -> Playlist:
    playlist = Playlist(
        id=f"pl_{uuid.uuid4().hex[:12]}",
        name=name,
        url=url,
        description=description,
        category=category,
        logo=logo,
    )
    with store.transaction():
        items = store.get_json(PLAYLISTS_KEY, [])
        items.append(asdict(playlist))
        store.set_json(PLAYLISTS_KEY, items)
    log.info("Added playlist %s (%s)", playlist.name, playlist.id)
    return playlist


def update_playlist(store: KeyValueStore, playlist_id: str, **fields: str) -> bool:
    """Update a playlist's fields. id and created_at are kept. Returns False if not found."""
    fields.pop("id", None)
    fields.pop("created_at", None)
    with store.transaction():
        items = store.get_json(PLAYLISTS_KEY, [])
        for p in items:
            if p["id"] == playlist_id:
                p.update(fields)
                store.set_json(PLAYLISTS_KEY, items)
                return True
    return False


def delete_playlist(store: KeyValueStore, playlist_id: str) -> bool:
    with store.transaction():
        items = store.get_json(PLAYLISTS_KEY, [])
        kept = [p for p in items if p["id"] != playlist_id]
        if len(kept) == len(items):
            return False
        store.set_json(PLAYLISTS_KEY, kept)
    log.info("Deleted playlist %s", playlist_id)
    return True


# =============================================================================
# Channels
# =============================================================================


@dataclass(slots=True)
class Channel:
    name: str
    url: str
    logo: str = ""
    group: str = DEFAULT_GROUP

    def __post_init__(self) -> None:
        self.logo = self.logo or ""
        self.group = self.group or DEFAULT_GROUP

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.url)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Channel:
        return cls(
            name=data.get("name", ""),
            url=data.get("url", ""),
            logo=data.get("logo") or "",
            group=data.get("group") or DEFAULT_GROUP,
        )


def _load_channels(store: KeyValueStore, key: str) -> list[Channel]:
    return [Channel.from_dict(c) for c in store.get_json(key, [])]


def get_channels(store: KeyValueStore) -> list[Channel]:
    """Get the accumulated channel collection."""
    return _load_channels(store, CHANNELS_KEY)


def append_channels(store: KeyValueStore, channels: Iterable[Any]) -> int:
    """Merge parsed channels into the collection. Returns the number added.

    Accepts anything with name/url/logo/group attributes (ParsedChannel, Channel).
    """
    new = [
        asdict(Channel(name=c.name, url=c.url, logo=c.logo or "", group=c.group))
        for c in channels
    ]
    with store.transaction():
        items = store.get_json(CHANNELS_KEY, [])
        items.extend(new)
        store.set_json(CHANNELS_KEY, items)
    return len(new)


def clear_channels(store: KeyValueStore) -> None:
    store.remove(CHANNELS_KEY)


def get_categories(channels: Iterable[Channel]) -> list[str]:
    """"All" followed by distinct groups in first-appearance order."""
    cats = dict.fromkeys(c.group for c in channels if c.group)
    return ["All", *cats]


def filter_channels(
    channels: Iterable[Channel], query: str = "", category: str = "All"
) -> list[Channel]:
    """Filter by case-insensitive name/group substring and exact category."""
    q = query.strip().lower()
    out = []
    for c in channels:
        if q and q not in c.name.lower() and q not in c.group.lower():
            continue
        if category and category != "All" and c.group != category:
            continue
        out.append(c)
    return out


# =============================================================================
# Favorites
# =============================================================================


def get_favorites(store: KeyValueStore) -> list[Channel]:
    return _load_channels(store, FAVORITES_KEY)


def is_favorite(store: KeyValueStore, channel: Channel) -> bool:
    return any(f.key == channel.key for f in get_favorites(store))


def toggle_favorite(store: KeyValueStore, channel: Channel) -> bool:
    """Add or remove a favorite (matched on name and url). Returns the new state."""
    with store.transaction():
        favorites = get_favorites(store)
        kept = [f for f in favorites if f.key != channel.key]
        added = len(kept) == len(favorites)
        if added:
            kept.append(channel)
        store.set_json(FAVORITES_KEY, [asdict(f) for f in kept])
    return added


# =============================================================================
# History
# =============================================================================


def record_play(store: KeyValueStore, channel: Channel) -> None:
    """Move channel to the front of the play history."""
    with store.transaction():
        history = store.get_json(HISTORY_KEY, [])
        history = [h for h in history if (h.get("name"), h.get("url")) != channel.key]
        history.insert(0, {**asdict(channel), "played_at": time.time()})
        # Keep only last HISTORY_MAX entries
        store.set_json(HISTORY_KEY, history[:HISTORY_MAX])


def get_history(store: KeyValueStore) -> list[dict[str, Any]]:
    """Play history, newest first."""
    return store.get_json(HISTORY_KEY, [])
