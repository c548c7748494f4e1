from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from typing import Optional, Tuple

from cdss import config
from cdss.store.schemas import User
from cdss.store.sqlite_store import SQLiteStore
from cdss.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

_DB_PATH = config.DB_PATH
_LOCK = threading.Lock()

_ALGO = "pbkdf2_sha256"
_ITERATIONS = 210000
MIN_PASSWORD_LENGTH = 8


def configure(*, db_path: str) -> None:
    global _DB_PATH
    _DB_PATH = db_path or _DB_PATH


def _store() -> SQLiteStore:
    return SQLiteStore(_DB_PATH)


def hash_password(raw_password: str, salt: bytes | None = None) -> str:
    salt = salt or secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac(
        "sha256",
        (raw_password or "").encode("utf-8"),
        salt,
        _ITERATIONS,
    )
    return f"{_ALGO}${_ITERATIONS}${salt.hex()}${dk.hex()}"


def verify_password(raw_password: str, stored: str) -> bool:
    try:
        algo, iters, salt_hex, hash_hex = (stored or "").split("$", 3)
        if algo != _ALGO:
            return False
        iterations = int(iters)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False
    actual = hashlib.pbkdf2_hmac(
        "sha256",
        (raw_password or "").encode("utf-8"),
        salt,
        iterations,
    )
    return hmac.compare_digest(actual, expected)


def authenticate(email: str, raw_password: str) -> Optional[User]:
    user = _store().get_user_by_email(email)
    if not user:
        return None
    if not verify_password(raw_password or "", user.password_hash):
        return None
    return user


def set_password(user_id: str, raw_password: str) -> None:
    with _LOCK:
        store = _store()
        user = store.get_user(user_id)
        if not user:
            return
        user.password_hash = hash_password(raw_password or "")
        user.updated_at = now_iso()
        store.update_user(user)


def change_password(
    user_id: str,
    old_password: str,
    new_password: str,
    confirm_password: str,
) -> Tuple[bool, str]:
    newp = (new_password or "").strip()
    conf = (confirm_password or "").strip()
    if not (old_password or "").strip():
        return False, "Current password is required."
    if len(newp) < MIN_PASSWORD_LENGTH:
        return False, f"New password must be at least {MIN_PASSWORD_LENGTH} characters."
    if newp != conf:
        return False, "Password confirmation does not match."
    user = _store().get_user(user_id)
    if not user or not verify_password(old_password or "", user.password_hash):
        return False, "Current password is incorrect."
    set_password(user_id, newp)
    logger.info("password changed user=%s", user_id)
    return True, "Password updated"
