"""Persistence for the library.

Everything is kept as string values under fixed keys in a small key-value
store, the same layout the web version kept in browser storage:

    library_books          JSON array of books
    library_loans          JSON array of loans
    library_api_key        Gemini API key
    library_ai_model       preferred Gemini model id
    library_logged_in      "true" while a session is open
    library_current_user   display name of the logged-in librarian

``SnapshotPersistence`` turns the two collection keys into a
``LibrarySnapshot`` and back. The ``Library`` only ever sees that object.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from school_library.database import get_db_connection, initialize_database
from school_library.models import Book, LibrarySnapshot, Loan

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "BOOKS": "library_books",
    "LOANS": "library_loans",
    "API_KEY": "library_api_key",
    "MODEL": "library_ai_model",
    "LOGGED_IN": "library_logged_in",
    "CURRENT_USER": "library_current_user",
}


class KeyValueStore:
    """Minimal string key-value interface."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """In-process store, used by tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteKeyValueStore(KeyValueStore):
    """Key-value store backed by the ``kv_store`` table of a SQLite file."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def get(self, key: str) -> Optional[str]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            """, (key, value))
            conn.commit()
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = get_db_connection(self.db_file)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


def _load_json(store: KeyValueStore, key: str) -> Optional[Any]:
    """Decode the JSON stored under ``key``; missing or corrupt values give None."""
    raw = store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.error(f"Stored value under {key!r} is not valid JSON; ignoring it")
        return None


class SnapshotPersistence:
    """Loads and saves the book and loan collections as JSON blobs."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def load(self) -> Optional[LibrarySnapshot]:
        """Return the stored snapshot, or None if nothing was ever saved."""
        raw_books = _load_json(self.store, STORAGE_KEYS["BOOKS"])
        raw_loans = _load_json(self.store, STORAGE_KEYS["LOANS"])
        if raw_books is None and raw_loans is None:
            return None
        books = [Book.from_dict(item) for item in raw_books or []]
        loans = [Loan.from_dict(item) for item in raw_loans or []]
        logger.info(f"Loaded {len(books)} books and {len(loans)} loans")
        return LibrarySnapshot(books=books, loans=loans)

    def save(self, snapshot: LibrarySnapshot) -> None:
        """Overwrite both collections."""
        self.store.set(STORAGE_KEYS["BOOKS"], json.dumps([b.to_dict() for b in snapshot.books], ensure_ascii=False))
        self.store.set(STORAGE_KEYS["LOANS"], json.dumps([l.to_dict() for l in snapshot.loans], ensure_ascii=False))


# --- AI configuration ---

def get_stored_api_key(store: KeyValueStore) -> Optional[str]:
    return store.get(STORAGE_KEYS["API_KEY"]) or None


def save_api_key(store: KeyValueStore, key: str) -> None:
    store.set(STORAGE_KEYS["API_KEY"], key)


def get_stored_model(store: KeyValueStore, default: str) -> str:
    return store.get(STORAGE_KEYS["MODEL"]) or default


def save_model(store: KeyValueStore, model: str) -> None:
    store.set(STORAGE_KEYS["MODEL"], model)


def clear_api_config(store: KeyValueStore) -> None:
    store.remove(STORAGE_KEYS["API_KEY"])
    store.remove(STORAGE_KEYS["MODEL"])
