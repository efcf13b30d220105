import json
import os

from school_library.library import Library
from school_library.models import Category, LibrarySnapshot
from school_library.storage import (
    STORAGE_KEYS,
    MemoryKeyValueStore,
    SnapshotPersistence,
    SQLiteKeyValueStore,
    clear_api_config,
    get_stored_api_key,
    get_stored_model,
    save_api_key,
    save_model,
)


def test_sqlite_store_roundtrip(tmp_path):
    db_file = str(tmp_path / "kv.db")
    store = SQLiteKeyValueStore(db_file)
    assert os.path.exists(db_file)
    assert store.get("missing") is None

    store.set("k", "v1")
    store.set("k", "v2")
    assert store.get("k") == "v2"

    # a second handle on the same file sees the data
    assert SQLiteKeyValueStore(db_file).get("k") == "v2"

    store.remove("k")
    assert store.get("k") is None


def test_sqlite_store_follows_env(tmp_path, monkeypatch):
    db_file = str(tmp_path / "env.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    SQLiteKeyValueStore().set("x", "1")
    assert SQLiteKeyValueStore(db_file).get("x") == "1"


def test_load_returns_none_when_empty():
    assert SnapshotPersistence(MemoryKeyValueStore()).load() is None


def test_save_uses_stored_layout(store, lib, now):
    book = lib.add_book("Số đỏ", "Vũ Trọng Phụng", Category.LITERATURE, 2)
    lib.borrow_book(book.id, "An", "10A1", now=now)

    books = json.loads(store.get(STORAGE_KEYS["BOOKS"]))
    loans = json.loads(store.get(STORAGE_KEYS["LOANS"]))
    assert books[0]["category"] == "Văn học"
    assert books[0]["available"] == 1
    assert loans[0]["bookId"] == book.id
    assert loans[0]["status"] == "Đang mượn"
    assert loans[0]["loanDate"] == "2024-03-01T08:00:00.000Z"


def test_corrupt_collection_is_treated_as_missing(now):
    store = MemoryKeyValueStore({STORAGE_KEYS["BOOKS"]: "{not json", STORAGE_KEYS["LOANS"]: "[]"})
    snapshot = SnapshotPersistence(store).load()
    assert snapshot == LibrarySnapshot(books=[], loans=[])

    lib = Library(SnapshotPersistence(store), seed_demo_data=True, now=now)
    assert lib.books == []


def test_library_on_sqlite(tmp_path, now):
    store = SQLiteKeyValueStore(str(tmp_path / "library.db"))
    lib = Library(SnapshotPersistence(store), seed_demo_data=True, now=now)
    lib.borrow_book("VH0002", "Lan", "11A3", now=now)

    reloaded = Library(SnapshotPersistence(SQLiteKeyValueStore(str(tmp_path / "library.db"))), now=now)
    assert reloaded.find_book("VH0002").available == 4
    assert len(reloaded.loans) == 2


def test_ai_config_helpers(store):
    assert get_stored_api_key(store) is None
    assert get_stored_model(store, "default-model") == "default-model"

    save_api_key(store, "abc")
    save_model(store, "gemini-2.0-flash")
    assert get_stored_api_key(store) == "abc"
    assert get_stored_model(store, "default-model") == "gemini-2.0-flash"

    clear_api_config(store)
    assert get_stored_api_key(store) is None
    assert get_stored_model(store, "default-model") == "default-model"
