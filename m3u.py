"""M3U/M3U8 playlist parsing and relay-based fetching."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

import asyncio
import http.client
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request


log = logging.getLogger(__name__)

DEFAULT_GROUP = "General"
UNKNOWN_CHANNEL = "Unknown Channel"
RELAY_TIMEOUT = 20  # seconds, per relay attempt
USER_AGENT = "Mozilla/5.0 (IPTV playlist manager)"

INVALID_CONTENT_MSG = "Invalid M3U content: the source returned an error or invalid response"
NO_CHANNELS_MSG = "No valid channels found in M3U content"

# Markers of an error page returned instead of a playlist
_ERROR_MARKERS = ("400: Invalid request", "Invalid URL")
_HTML_MARKERS = ("<html", "<!doctype")
_HLS_TAGS = ("#EXT-X-VERSION", "#EXT-X-TARGETDURATION")
_EXTINF = "#EXTINF:"

# (primary key, fallback key) per attribute
_ATTR_KEYS = {
    "logo": ("tvg-logo", "logo"),
    "group": ("group-title", "group"),
    "language": ("tvg-language", "language"),
    "country": ("tvg-country", "country"),
}
_ATTR_RES = {
    key: re.compile(rf'(?<![\w-]){re.escape(key)}="([^"]+)"', re.IGNORECASE)
    for keys in _ATTR_KEYS.values()
    for key in keys
}


class ParseError(ValueError):
    """Content is present but is not a usable playlist."""


class FetchError(Exception):
    """Playlist could not be retrieved (invalid URL or every relay failed)."""


@dataclass(slots=True)
class ParsedChannel:
    name: str
    url: str
    logo: str | None = None
    group: str = DEFAULT_GROUP
    language: str | None = None
    country: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Parser
# =============================================================================


def _is_error_page(content: str, lines: list[str]) -> bool:
    if len(lines) < 2:
        return True
    if any(marker in content for marker in _ERROR_MARKERS):
        return True
    lowered = content.lower()
    if any(marker in lowered for marker in _HTML_MARKERS):
        return True
    # "error" alone only condemns bodies with no playlist structure
    has_structure = lines[0].upper().startswith("#EXTM3U") or _EXTINF in content
    return not has_structure and "error" in lowered


def _is_stream_url(line: str) -> bool:
    if not line.startswith("http"):
        return False
    path = urllib.parse.urlsplit(line).path.lower()
    return path.endswith((".m3u8", ".ts"))


def _parse_hls(lines: list[str]) -> list[ParsedChannel]:
    """A media playlist describes one stream, not a channel list."""
    for line in lines:
        if _is_stream_url(line):
            return [ParsedChannel(name="Live Stream", url=line, group="Live")]
    return []


def _attr(header: str, name: str) -> str | None:
    for key in _ATTR_KEYS[name]:
        m = _ATTR_RES[key].search(header)
        if m:
            return m.group(1)
    return None


def parse_extinf(header: str, url: str) -> ParsedChannel:
    """Build a channel from an #EXTINF header and its URL line.

    Raises ValueError if the attribute section is malformed. Quotes in the
    title are dropped, so `12" Vinyl` becomes `12 Vinyl`.
    """
    attrs, comma, title = header.rpartition(",")
    if not comma:
        attrs = header
    if attrs.count('"') % 2:
        raise ValueError(f"unbalanced quotes in header: {header[:80]!r}")
    name = title.replace('"', "").strip() if comma else ""
    return ParsedChannel(
        name=name or UNKNOWN_CHANNEL,
        url=url,
        logo=_attr(header, "logo"),
        group=_attr(header, "group") or DEFAULT_GROUP,
        language=_attr(header, "language"),
        country=_attr(header, "country"),
    )


def _find_url_line(lines: list[str], start: int) -> int | None:
    """Index of the URL line belonging to the header just before `start`."""
    j = start
    while j < len(lines) and lines[j].startswith("#"):
        if lines[j].startswith(_EXTINF):
            return None
        j += 1
    return j if j < len(lines) else None


def parse_m3u(content: str) -> list[ParsedChannel]:
    """Parse playlist text into channels, in source order.

    Handles extended M3U (#EXTINF + URL pairs), bare URL lists and HLS media
    playlists (returned as a single "Live Stream" channel).

    Raises:
        ParseError: content is an error page or yields no channels.
    """
    lines = [line.strip() for line in content.split("\n")]
    lines = [line for line in lines if line]
    log.debug("Parsing playlist: %d lines", len(lines))

    if _is_error_page(content, lines):
        raise ParseError(INVALID_CONTENT_MSG)

    if any(tag in content for tag in _HLS_TAGS):
        channels = _parse_hls(lines)
        if not channels:
            raise ParseError(NO_CHANNELS_MSG)
        return channels

    channels: list[ParsedChannel] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith(_EXTINF):
            j = _find_url_line(lines, i + 1)
            if j is None:
                i += 1
                continue
            try:
                channels.append(parse_extinf(line, lines[j]))
            except ValueError as e:
                log.warning("Skipping malformed entry at line %d: %s", i + 1, e)
            i = j + 1
            continue
        if line.startswith("http") and "#EXT" not in line:
            channels.append(ParsedChannel(name=f"Channel {len(channels) + 1}", url=line))
        i += 1

    if not channels:
        raise ParseError(NO_CHANNELS_MSG)
    log.debug("Parsed %d channels", len(channels))
    return channels


# =============================================================================
# Fetcher
# =============================================================================


def _unwrap_contents(body: bytes) -> str:
    """allorigins wraps the target response as {"contents": ...}."""
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("relay response is not a JSON object")
    contents = data.get("contents")
    if contents is None:
        return ""
    if not isinstance(contents, str):
        raise ValueError("relay \"contents\" is not a string")
    return contents


def _decode_text(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class Relay:
    name: str
    template: str  # "{url}" is replaced by the encoded target URL
    unwrap: Callable[[bytes], str]

    def request_url(self, target: str) -> str:
        return self.template.format(url=urllib.parse.quote(target, safe=""))


RELAYS: tuple[Relay, ...] = (
    Relay("allorigins", "https://api.allorigins.win/get?url={url}", _unwrap_contents),
    Relay("corsproxy", "https://corsproxy.io/?{url}", _decode_text),
)


def validate_url(url: str) -> None:
    """Raise FetchError unless url is an absolute http(s) URL."""
    parsed = urllib.parse.urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise FetchError("invalid URL")


def _http_get(url: str, timeout: float, user_agent: str = "") -> bytes:
    req = urllib.request.Request(url, headers={"User-Agent": user_agent or USER_AGENT})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return resp.read()


def _fetch_via_relay(relay: Relay, target: str, timeout: float, user_agent: str = "") -> str:
    """Fetch target through one relay. Any failure becomes a FetchError."""
    try:
        body = _http_get(relay.request_url(target), timeout, user_agent)
        return relay.unwrap(body)
    except urllib.error.HTTPError as e:
        raise FetchError(f"{relay.name}: HTTP error, status {e.code}") from e
    except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
        raise FetchError(f"{relay.name}: {e}") from e
    except (ValueError, TypeError) as e:
        raise FetchError(f"{relay.name}: malformed response: {e}") from e


async def fetch_playlist_text(
    url: str,
    relays: tuple[Relay, ...] = RELAYS,
    timeout: float = RELAY_TIMEOUT,
    user_agent: str = "",
) -> str:
    """Retrieve playlist text, trying each relay in order until one returns content.

    An empty user_agent sends the default USER_AGENT header.
    """
    validate_url(url)
    url = url.strip()
    last_error: FetchError | None = None
    for relay in relays:
        log.debug("Trying relay %s for %s", relay.name, url)
        try:
            content = await asyncio.to_thread(_fetch_via_relay, relay, url, timeout, user_agent)
        except FetchError as e:
            log.warning("Relay failed: %s", e)
            last_error = e
            continue
        if content and content.strip():
            log.info("Fetched playlist via %s (%d bytes)", relay.name, len(content))
            return content
        log.warning("Relay %s returned an empty body", relay.name)
    raise last_error or FetchError("all relay endpoints failed")


async def fetch_m3u(
    url: str,
    relays: tuple[Relay, ...] = RELAYS,
    timeout: float = RELAY_TIMEOUT,
    user_agent: str = "",
) -> list[ParsedChannel]:
    """Fetch a playlist URL and parse it. ParseError propagates unchanged."""
    content = await fetch_playlist_text(url, relays, timeout, user_agent)
    channels = parse_m3u(content)
    log.info("Loaded %d channels from %s", len(channels), url)
    return channels
