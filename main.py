#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]", "jinja2", "python-multipart", "cryptography"]
# ///
"""IPTV Playlist Manager.

Usage:
    ./main.py [--port PORT] [--debug]
    ./main.py --set-password PASSWORD

Options:
    --port PORT                 Port to listen on (default: 8000)
    --debug                     Enable debug logging
    --set-password PASSWORD     Store a new admin password and exit
"""

from __future__ import annotations

import logging
import pathlib
import time
import urllib.parse
from typing import Annotated
from typing import Any

from fastapi import Depends
from fastapi import FastAPI
from fastapi import File
from fastapi import Form
from fastapi import HTTPException
from fastapi import Request
from fastapi import UploadFile
from fastapi.responses import HTMLResponse
from fastapi.responses import RedirectResponse
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

import auth
from cache import Channel
from cache import KeyValueStore
from cache import add_playlist
from cache import append_channels
from cache import clear_channels
from cache import delete_playlist
from cache import filter_channels
from cache import get_categories
from cache import get_channels
from cache import get_favorites
from cache import get_history
from cache import get_playlist
from cache import get_playlists
from cache import get_store
from cache import is_favorite
from cache import load_server_settings
from cache import record_play
from cache import toggle_favorite
from cache import update_playlist
from m3u import FetchError
from m3u import RELAY_TIMEOUT
from m3u import ParseError
from m3u import fetch_m3u
from m3u import parse_m3u
from m3u import validate_url


log = logging.getLogger()

# Login rate limiting: track failed attempts per IP
_login_attempts: dict[str, list[float]] = {}
_LOGIN_WINDOW = 300  # 5 minutes
_LOGIN_MAX_ATTEMPTS = 10

_MAX_UPLOAD_BYTES = 20 * 1024 * 1024
_MAX_NAME_LEN = 200


# =============================================================================
# App Setup
# =============================================================================

APP_DIR = pathlib.Path(__file__).parent
TEMPLATES = Jinja2Templates(directory=APP_DIR / "templates")

app = FastAPI(title="IPTV Playlist Manager")
app.mount("/static", StaticFiles(directory=APP_DIR / "static"), name="static")

Store = Annotated[KeyValueStore, Depends(get_store)]


class AuthRequired(Exception):
    """Raised when authentication is required."""


@app.exception_handler(AuthRequired)
async def auth_required_handler(request: Request, _exc: AuthRequired):
    return RedirectResponse("/login", status_code=303)


def get_current_user(request: Request) -> dict | None:
    token = request.cookies.get("token")
    if not token:
        return None
    return auth.verify_token(token)


def require_auth(request: Request) -> dict:
    user = get_current_user(request)
    if not user:
        raise AuthRequired
    return user


User = Annotated[dict, Depends(require_auth)]


def _redirect(path: str, **params: str) -> RedirectResponse:
    query = urllib.parse.urlencode({k: v for k, v in params.items() if v})
    return RedirectResponse(f"{path}?{query}" if query else path, status_code=303)


def _safe_next(target: str) -> str:
    """Only allow local redirect targets."""
    if target.startswith("/") and not target.startswith("//"):
        return target
    return "/channels"


def _fetch_options() -> dict[str, Any]:
    """Relay timeout and User-Agent from server settings."""
    settings = load_server_settings()
    return {
        "timeout": float(settings.get("relay_timeout") or RELAY_TIMEOUT),
        "user_agent": settings.get("user_agent") or "",
    }


def _validate_playlist_form(name: str, url: str) -> None:
    if not name.strip():
        raise HTTPException(400, "Name is required")
    if len(name) > _MAX_NAME_LEN:
        raise HTTPException(400, "Name too long")
    try:
        validate_url(url)
    except FetchError as e:
        raise HTTPException(400, "URL must be an absolute http or https URL") from e


# =============================================================================
# Auth Routes
# =============================================================================


@app.get("/login", response_class=HTMLResponse)
async def login_page(request: Request, error: str | None = None):
    if get_current_user(request):
        return RedirectResponse("/", status_code=303)
    return TEMPLATES.TemplateResponse(request, "login.html", {"login_error": error})


def _check_rate_limit(ip: str) -> None:
    """Check login rate limit. Raises HTTPException if exceeded."""
    now = time.time()
    attempts = _login_attempts.get(ip, [])
    # Clean old attempts for this IP
    attempts = [t for t in attempts if now - t < _LOGIN_WINDOW]
    if attempts:
        _login_attempts[ip] = attempts
    elif ip in _login_attempts:
        del _login_attempts[ip]
    # Periodically clean stale IPs (when dict is large)
    if len(_login_attempts) > 1000:
        stale = [k for k, v in _login_attempts.items() if not v or now - max(v) > _LOGIN_WINDOW]
        for k in stale[:100]:
            del _login_attempts[k]
    if len(attempts) >= _LOGIN_MAX_ATTEMPTS:
        raise HTTPException(429, "Too many login attempts, try again later")


@app.post("/login")
async def login(
    request: Request,
    password: Annotated[str, Form()],
    remember: Annotated[str, Form()] = "",  # Checkbox: "on" if checked
):
    """Check the admin password and start a session."""
    ip = request.client.host if request.client else "unknown"
    _check_rate_limit(ip)
    if not auth.verify_password(password):
        _login_attempts.setdefault(ip, []).append(time.time())
        log.warning("Failed login from %s", ip)
        return RedirectResponse("/login?error=invalid", status_code=303)
    ttl = auth.REMEMBER_TTL if remember == "on" else auth.TOKEN_TTL
    token = auth.create_token({"sub": auth.ADMIN_USER}, ttl=ttl)
    response = RedirectResponse("/", status_code=303)
    is_secure = request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https"
    response.set_cookie(
        "token",
        token,
        httponly=True,
        samesite="strict",
        # Without "remember me" the cookie ends with the browser session
        max_age=ttl if remember == "on" else None,
        secure=is_secure,
    )
    return response


@app.get("/logout")
async def logout():
    response = RedirectResponse("/login", status_code=303)
    response.delete_cookie("token")
    return response


@app.get("/favicon.ico")
async def favicon():
    return Response(status_code=204)


# =============================================================================
# Dashboard & Playlists
# =============================================================================


@app.get("/", response_class=HTMLResponse)
async def dashboard(request: Request, _user: User, store: Store):
    playlists = get_playlists(store)
    channels = get_channels(store)
    return TEMPLATES.TemplateResponse(
        request,
        "dashboard.html",
        {
            "playlists": playlists,
            "stats": {
                "links": len(playlists),
                "categories": len({p.category or "General" for p in playlists}),
                "channels": len(channels),
                "favorites": len(get_favorites(store)),
            },
            "error": request.query_params.get("error"),
            "notice": request.query_params.get("notice"),
        },
    )


@app.get("/playlists/new", response_class=HTMLResponse)
async def playlist_new_page(request: Request, _user: User):
    return TEMPLATES.TemplateResponse(request, "playlist_form.html", {"playlist": None})


@app.post("/playlists/add")
async def playlist_add(
    _user: User,
    store: Store,
    name: Annotated[str, Form()],
    url: Annotated[str, Form()],
    description: Annotated[str, Form()] = "",
    category: Annotated[str, Form()] = "",
    logo: Annotated[str, Form()] = "",
):
    _validate_playlist_form(name, url)
    playlist = add_playlist(
        store, name.strip(), url.strip(), description.strip(), category.strip(), logo.strip()
    )
    return _redirect("/", notice=f'"{playlist.name}" has been added to your collection.')


@app.get("/playlists/{playlist_id}/edit", response_class=HTMLResponse)
async def playlist_edit_page(request: Request, playlist_id: str, _user: User, store: Store):
    playlist = get_playlist(store, playlist_id)
    if not playlist:
        raise HTTPException(404, "Playlist not found")
    return TEMPLATES.TemplateResponse(request, "playlist_form.html", {"playlist": playlist})


@app.post("/playlists/{playlist_id}/edit")
async def playlist_edit(
    playlist_id: str,
    _user: User,
    store: Store,
    name: Annotated[str, Form()],
    url: Annotated[str, Form()],
    description: Annotated[str, Form()] = "",
    category: Annotated[str, Form()] = "",
    logo: Annotated[str, Form()] = "",
):
    _validate_playlist_form(name, url)
    updated = update_playlist(
        store,
        playlist_id,
        name=name.strip(),
        url=url.strip(),
        description=description.strip(),
        category=category.strip(),
        logo=logo.strip(),
    )
    if not updated:
        raise HTTPException(404, "Playlist not found")
    return _redirect("/", notice=f'"{name.strip()}" has been updated successfully.')


@app.post("/playlists/{playlist_id}/delete")
async def playlist_delete(playlist_id: str, _user: User, store: Store):
    if not delete_playlist(store, playlist_id):
        raise HTTPException(404, "Playlist not found")
    return _redirect("/", notice="Link deleted.")


@app.post("/playlists/{playlist_id}/load")
async def playlist_load(playlist_id: str, _user: User, store: Store):
    """Fetch a registered playlist and merge its channels into the collection."""
    playlist = get_playlist(store, playlist_id)
    if not playlist:
        raise HTTPException(404, "Playlist not found")
    return await _import_url(store, playlist.url, playlist.name)


# =============================================================================
# Imports
# =============================================================================


async def _import_url(store: KeyValueStore, url: str, label: str) -> RedirectResponse:
    try:
        channels = await fetch_m3u(url, **_fetch_options())
    except (FetchError, ParseError) as e:
        # Stored channels are left untouched
        log.warning("Import of %s failed: %s", url, e)
        return _redirect("/channels", error=f"Failed to load M3U playlist: {e}")
    added = append_channels(store, channels)
    log.info("Imported %d channels from %s", added, url)
    return _redirect("/channels", notice=f"Added {added} channels from {label}")


@app.post("/import/url")
async def import_url(_user: User, store: Store, url: Annotated[str, Form()]):
    return await _import_url(store, url.strip(), "URL")


@app.post("/import/file")
async def import_file(_user: User, store: Store, file: Annotated[UploadFile, File()]):
    data = await file.read(_MAX_UPLOAD_BYTES + 1)
    if len(data) > _MAX_UPLOAD_BYTES:
        raise HTTPException(413, "Playlist file too large")
    content = data.decode("utf-8", errors="replace")
    try:
        channels = parse_m3u(content)
    except ParseError as e:
        log.warning("Import of file %s failed: %s", file.filename, e)
        return _redirect("/channels", error=f"Failed to process M3U file: {e}")
    added = append_channels(store, channels)
    log.info("Imported %d channels from file %s", added, file.filename)
    return _redirect("/channels", notice=f"Added {added} channels from file: {file.filename}")


# =============================================================================
# Channels, Favorites, Player
# =============================================================================


@app.get("/channels", response_class=HTMLResponse)
async def channels_page(
    request: Request,
    _user: User,
    store: Store,
    q: str = "",
    category: str = "All",
    view: str = "grid",
    favorites: bool = False,
    error: str | None = None,
    notice: str | None = None,
):
    fav_list = get_favorites(store)
    source = fav_list if favorites else get_channels(store)
    return TEMPLATES.TemplateResponse(
        request,
        "channels.html",
        {
            "channels": filter_channels(source, q, category),
            "total": len(source),
            "categories": get_categories(source),
            "current_category": category,
            "query": q,
            "view": "list" if view == "list" else "grid",
            "show_favorites": favorites,
            "favorite_keys": {f.key for f in fav_list},
            "favorite_count": len(fav_list),
            "error": error,
            "notice": notice,
        },
    )


@app.post("/channels/clear")
async def channels_clear(_user: User, store: Store):
    clear_channels(store)
    return _redirect("/channels", notice="Channel list cleared")


@app.post("/favorites/toggle")
async def favorites_toggle(
    _user: User,
    store: Store,
    name: Annotated[str, Form()],
    url: Annotated[str, Form()],
    logo: Annotated[str, Form()] = "",
    group: Annotated[str, Form()] = "",
    next_url: Annotated[str, Form(alias="next")] = "/channels",
):
    channel = Channel(name=name, url=url, logo=logo, group=group)
    added = toggle_favorite(store, channel)
    verb = "added to" if added else "removed from"
    target = _safe_next(next_url)
    sep = "&" if "?" in target else "?"
    query = urllib.parse.urlencode({"notice": f"{name} {verb} your favorites"})
    return RedirectResponse(f"{target}{sep}{query}", status_code=303)


@app.get("/play", response_class=HTMLResponse)
async def player_page(
    request: Request,
    _user: User,
    store: Store,
    url: str,
    name: str = "",
    logo: str = "",
    group: str = "",
):
    try:
        validate_url(url)
    except FetchError as e:
        raise HTTPException(400, "Invalid stream URL") from e
    channel = Channel(name=name or url, url=url, logo=logo, group=group)
    record_play(store, channel)
    return TEMPLATES.TemplateResponse(
        request,
        "player.html",
        {"channel": channel, "is_favorite": is_favorite(store, channel)},
    )


# =============================================================================
# JSON API
# =============================================================================


def _channel_dicts(channels: list[Channel]) -> list[dict[str, Any]]:
    return [{"name": c.name, "url": c.url, "logo": c.logo, "group": c.group} for c in channels]


@app.get("/api/channels")
async def api_channels(_user: User, store: Store, q: str = "", category: str = "All"):
    channels = get_channels(store)
    return {
        "channels": _channel_dicts(filter_channels(channels, q, category)),
        "categories": get_categories(channels),
    }


@app.get("/api/favorites")
async def api_favorites(_user: User, store: Store):
    return {"favorites": _channel_dicts(get_favorites(store))}


@app.post("/api/favorites/toggle")
async def api_favorites_toggle(request: Request, _user: User, store: Store):
    try:
        data = await request.json()
    except ValueError as e:
        raise HTTPException(400, "Invalid JSON body") from e
    if not isinstance(data, dict):
        raise HTTPException(400, "Expected a JSON object")
    name, url = data.get("name"), data.get("url")
    if not isinstance(name, str) or not isinstance(url, str) or not name or not url:
        raise HTTPException(400, "name and url are required")
    channel = Channel.from_dict(data)
    return {"favorite": toggle_favorite(store, channel)}


@app.get("/api/history")
async def api_history(_user: User, store: Store):
    return {"history": get_history(store)}


@app.post("/api/parse")
async def api_parse(request: Request, _user: User):
    """Parse raw playlist text from the request body."""
    body = await request.body()
    if len(body) > _MAX_UPLOAD_BYTES:
        raise HTTPException(413, "Playlist too large")
    try:
        channels = parse_m3u(body.decode("utf-8", errors="replace"))
    except ParseError as e:
        raise HTTPException(422, str(e)) from e
    return {"channels": [c.to_dict() for c in channels]}


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="IPTV Playlist Manager")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--set-password", metavar="PASSWORD", help="Store a new admin password")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    if args.set_password is not None:
        try:
            auth.set_password(args.set_password)
        except ValueError as e:
            raise SystemExit(str(e)) from e
        raise SystemExit(0)

    uv_log = "debug" if args.debug else "info"
    uvicorn.run(app, host=args.host, port=args.port, access_log=args.debug, log_level=uv_log)
