"""Librarian login.

There is a single librarian account configured through settings. Logging in
only records a session flag and the display name in the key-value store; it
is a convenience gate for the UI, not a security boundary.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from school_library.config import settings
from school_library.storage import STORAGE_KEYS, KeyValueStore

logger = logging.getLogger(__name__)


def check_credentials(username: str, password: str) -> bool:
    """Return True if the pair matches the configured account."""
    user_ok = secrets.compare_digest(username.encode("utf-8"), settings.username.encode("utf-8"))
    pass_ok = secrets.compare_digest(password.encode("utf-8"), settings.password.encode("utf-8"))
    return user_ok and pass_ok


def login(store: KeyValueStore, username: str, password: str) -> Optional[str]:
    """Open a session. Returns the display name on success, None otherwise."""
    if not check_credentials(username, password):
        logger.warning("Login failed: invalid credentials")
        return None
    store.set(STORAGE_KEYS["LOGGED_IN"], "true")
    store.set(STORAGE_KEYS["CURRENT_USER"], username)
    logger.info(f"{username} logged in")
    return username


def logout(store: KeyValueStore) -> bool:
    """Close the session. Returns True if one was open."""
    was_logged_in = is_logged_in(store)
    store.remove(STORAGE_KEYS["LOGGED_IN"])
    store.remove(STORAGE_KEYS["CURRENT_USER"])
    return was_logged_in


def is_logged_in(store: KeyValueStore) -> bool:
    return store.get(STORAGE_KEYS["LOGGED_IN"]) == "true"


def current_user(store: KeyValueStore) -> str:
    return store.get(STORAGE_KEYS["CURRENT_USER"]) or ""
