import random
from datetime import datetime
from typing import Callable, Container, Optional

from school_library.errors import IdSpaceExhaustedError
from school_library.models import Category

BOOK_NUMBER_MIN = 1000
BOOK_NUMBER_MAX = 9999


def generate_book_id(category: Category, existing: Container[str] = (),
                     randint: Callable[[int, int], int] = random.randint) -> str:
    """Return ``<prefix><4 digits>`` for the category, avoiding ids in ``existing``.

    Random draws are tried first; once they keep colliding the free numbers are
    scanned in order so a nearly full prefix still gets an id.
    """
    prefix = category.prefix
    for _ in range(50):
        candidate = f"{prefix}{randint(BOOK_NUMBER_MIN, BOOK_NUMBER_MAX)}"
        if candidate not in existing:
            return candidate
    for number in range(BOOK_NUMBER_MIN, BOOK_NUMBER_MAX + 1):
        candidate = f"{prefix}{number}"
        if candidate not in existing:
            return candidate
    raise IdSpaceExhaustedError(f"No free book id left for prefix {prefix}.")


def generate_loan_id(now: datetime, existing: Container[str] = ()) -> str:
    """``L<epoch milliseconds>``, with a counter suffix if that id is taken."""
    base = f"L{int(now.timestamp() * 1000)}"
    candidate = base
    suffix: Optional[int] = None
    while candidate in existing:
        suffix = 1 if suffix is None else suffix + 1
        candidate = f"{base}-{suffix}"
    return candidate
