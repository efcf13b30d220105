from datetime import datetime, timezone

import pytest

from school_library.library import Library
from school_library.models import Category
from school_library.storage import MemoryKeyValueStore, SnapshotPersistence


# Fixed clock so fines and due dates are predictable
NOW = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def lib(store):
    # Empty catalog in memory; each test gets its own store
    return Library(SnapshotPersistence(store), seed_demo_data=False, now=NOW)


@pytest.fixture
def book(lib):
    """A literature title with 5 copies, 3 on the shelf."""
    b = lib.add_book("Số đỏ", "Vũ Trọng Phụng", Category.LITERATURE, 5)
    b.available = 3
    return b


@pytest.fixture
def now():
    return NOW
