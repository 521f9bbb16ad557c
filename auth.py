"""Admin password verification and signed session tokens."""

from __future__ import annotations

from typing import Any

import base64
import binascii
import json
import logging
import os
import secrets
import time

from cryptography.exceptions import InvalidKey, InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

import cache


log = logging.getLogger(__name__)

ADMIN_USER = "admin"
DEFAULT_PASSWORD = "admin123"
MIN_PASSWORD_LEN = 8
SECRET_FILE = cache.CACHE_DIR / "secret.key"

TOKEN_TTL = 86400  # 1 day
REMEMBER_TTL = 30 * 86400  # "Remember me"

# scrypt parameters
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SALT_LEN = 16
_KEY_LEN = 32

_secret: tuple[str, bytes] | None = None  # (path, key)


def _b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64d(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _scrypt(salt: bytes) -> Scrypt:
    # Scrypt instances are single-use
    return Scrypt(salt=salt, length=_KEY_LEN, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)


def hash_password(password: str) -> str:
    salt = os.urandom(_SALT_LEN)
    key = _scrypt(salt).derive(password.encode())
    return f"scrypt${_b64e(salt)}${_b64e(key)}"


def _check_hash(password: str, stored: str) -> bool:
    try:
        scheme, salt, key = stored.split("$")
        if scheme != "scrypt":
            return False
        _scrypt(_b64d(salt)).verify(password.encode(), _b64d(key))
    except (ValueError, binascii.Error, InvalidKey):
        return False
    return True


def verify_password(password: str) -> bool:
    """Check the admin password against the stored hash or the built-in default."""
    stored = cache.load_server_settings().get("admin_password_hash", "")
    if stored:
        return _check_hash(password, stored)
    return secrets.compare_digest(password.encode(), DEFAULT_PASSWORD.encode())


def set_password(password: str) -> None:
    """Replace the admin password."""
    if len(password) < MIN_PASSWORD_LEN:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LEN} characters")
    settings = cache.load_server_settings()
    settings["admin_password_hash"] = hash_password(password)
    cache.save_server_settings(settings)
    log.info("Admin password updated")


def _secret_key() -> bytes:
    """Load the token signing key, creating it on first use."""
    global _secret
    path = str(SECRET_FILE)
    if _secret and _secret[0] == path:
        return _secret[1]
    if SECRET_FILE.exists():
        key = SECRET_FILE.read_bytes()
    else:
        key = secrets.token_bytes(32)
        SECRET_FILE.write_bytes(key)
        SECRET_FILE.chmod(0o600)
        log.info("Generated new token signing key")
    _secret = (path, key)
    return key


def _sign(body: bytes) -> bytes:
    h = hmac.HMAC(_secret_key(), hashes.SHA256())
    h.update(body)
    return h.finalize()


def create_token(payload: dict[str, Any], ttl: int = TOKEN_TTL) -> str:
    """Create a signed token carrying payload and an expiry."""
    body = json.dumps({**payload, "exp": int(time.time()) + ttl}, separators=(",", ":"))
    encoded = _b64e(body.encode())
    return f"{encoded}.{_b64e(_sign(encoded.encode()))}"


def verify_token(token: str) -> dict[str, Any] | None:
    """Return the token payload, or None if the token is forged, malformed or expired."""
    try:
        encoded, sig = token.split(".")
        h = hmac.HMAC(_secret_key(), hashes.SHA256())
        h.update(encoded.encode())
        h.verify(_b64d(sig))
        payload = json.loads(_b64d(encoded))
    except (ValueError, binascii.Error, InvalidSignature):
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    return payload
