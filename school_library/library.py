from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from school_library.config import settings
from school_library.errors import (
    AlreadyRenewedError,
    BookNotFoundError,
    BorrowLimitExceededError,
    OutOfStockError,
)
from school_library.ids import generate_book_id, generate_loan_id
from school_library.models import (
    Book,
    BookUpdate,
    Category,
    LibrarySnapshot,
    Loan,
    LoanStatus,
    LoanUpdate,
    parse_timestamp,
    utcnow,
)
from school_library.storage import SnapshotPersistence, SQLiteKeyValueStore
from school_library.utils.validators import QuantityValidator, TextValidator

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
UNKNOWN_AUTHOR = "Chưa rõ"


def _demo_snapshot() -> LibrarySnapshot:
    """Catalog the library starts with when nothing has been saved yet."""
    books = [
        Book("VH0001", "Số đỏ", "Vũ Trọng Phụng", Category.LITERATURE, 5, 3),
        Book("VH0002", "Nhà giả kim", "Paulo Coelho", Category.LITERATURE, 8, 5),
        Book("KH0001", "Bài tập Toán nâng cao 10", "Nguyễn Văn A", Category.SCIENCE, 10, 7),
        Book("LS0001", "Đại Việt sử ký toàn thư", "Ngô Sĩ Liên", Category.HISTORY_GEOGRAPHY, 3, 3),
    ]
    loans = [
        Loan(
            id="L001",
            book_id="VH0001",
            book_title="Số đỏ",
            student_name="Nguyễn Văn Nam",
            student_class="12A1",
            loan_date=parse_timestamp("2023-10-01"),
            due_date=parse_timestamp("2023-10-15"),
            status=LoanStatus.OVERDUE,
            is_renewed=False,
            fine_amount=50000,
        )
    ]
    return LibrarySnapshot(books=books, loans=loans)


def days_late(due_date: datetime, now: datetime) -> int:
    """Whole days past due, rounded up. Zero when not past due."""
    if now <= due_date:
        return 0
    return math.ceil(abs(now - due_date) / DAY)


def calculate_fine(due_date: datetime, now: datetime, fine_per_day: Optional[int] = None) -> int:
    per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
    return days_late(due_date, now) * per_day


@dataclass
class ReturnReceipt:
    """Outcome of returning a loan."""

    loan: Loan
    fine: int
    days_late: int

    @property
    def is_late(self) -> bool:
        return self.fine > 0

    @property
    def message(self) -> str:
        if not self.is_late:
            return "Book returned on time."
        return f"Book returned {self.days_late} day(s) late. Fine: {self.fine:,} VND"


class Library:
    """The library's books and loans, and the only way to change them.

    Every successful mutation is written through to the persistence adapter
    as a full snapshot. Loading runs the overdue sweep once.
    """

    def __init__(
        self,
        persistence: Optional[SnapshotPersistence] = None,
        *,
        seed_demo_data: Optional[bool] = None,
        sweep_on_load: bool = True,
        now: Optional[datetime] = None,
        loan_days: Optional[int] = None,
        renew_days: Optional[int] = None,
        fine_per_day: Optional[int] = None,
        borrow_limit: Optional[int] = None,
    ) -> None:
        self.persistence = persistence or SnapshotPersistence(SQLiteKeyValueStore())
        self.loan_period = timedelta(days=settings.loan_days if loan_days is None else loan_days)
        self.renew_period = timedelta(days=settings.renew_days if renew_days is None else renew_days)
        self.fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
        self.borrow_limit = settings.borrow_limit if borrow_limit is None else borrow_limit

        seed = settings.seed_demo_data if seed_demo_data is None else seed_demo_data
        snapshot = self.persistence.load()
        is_new = snapshot is None
        if snapshot is None:
            snapshot = _demo_snapshot() if seed else LibrarySnapshot()
            logger.info(f"No saved library found; starting with {len(snapshot.books)} books")
        self.books: List[Book] = snapshot.books
        self.loans: List[Loan] = snapshot.loans
        if is_new:
            self._persist()

        if sweep_on_load:
            self.sweep_overdue(now=now)

    # ------------------------- Persistence ------------------------- #
    def snapshot(self) -> LibrarySnapshot:
        return LibrarySnapshot(books=list(self.books), loans=list(self.loans))

    def _persist(self) -> None:
        self.persistence.save(self.snapshot())

    def close(self) -> None:
        self._persist()

    # ------------------------- Books ------------------------- #
    def list_books(self) -> List[Book]:
        return list(self.books)

    def find_book(self, book_id: str) -> Optional[Book]:
        return next((b for b in self.books if b.id == book_id), None)

    def search_books(self, query: Optional[str] = None) -> List[Book]:
        """Case-insensitive match on title, author or id."""
        term = (query or "").strip().lower()
        if not term:
            return self.list_books()
        return [
            b for b in self.books
            if term in b.title.lower() or term in b.author.lower() or term in b.id.lower()
        ]

    def available_books(self, query: Optional[str] = None) -> List[Book]:
        """Books that can be borrowed right now, filtered by title or id."""
        term = (query or "").strip().lower()
        return [
            b for b in self.books
            if b.available > 0 and (term in b.title.lower() or term in b.id.lower())
        ]

    def add_book(self, title: str, author: str, category: Category, total: int) -> Book:
        """Add a title with ``total`` copies, all of them on the shelf."""
        if not TextValidator.validate_title(title):
            raise ValueError("Title cannot be empty.")
        if not QuantityValidator.validate_count(total):
            raise ValueError("Total copies must be a non-negative integer.")
        category = Category.parse(category)
        book_id = generate_book_id(category, {b.id for b in self.books})
        book = Book(
            id=book_id,
            title=title.strip(),
            author=(author or "").strip(),
            category=category,
            total=total,
            available=total,
        )
        self.books.append(book)
        self._persist()
        logger.info(f"Added book {book.id}: {book.title} ({total} copies)")
        return book

    def update_book(self, book_id: str, update: BookUpdate) -> Optional[Book]:
        """Merge the set fields of ``update`` into the book.

        Keeping ``available <= total`` is up to the caller.
        """
        changes = update.changes()
        if "title" in changes and not TextValidator.validate_title(changes["title"]):
            raise ValueError("Title cannot be empty.")
        for key in ("total", "available"):
            if key in changes and not QuantityValidator.validate_count(changes[key]):
                raise ValueError(f"{key} must be a non-negative integer.")
        if "category" in changes:
            changes["category"] = Category.parse(changes["category"])

        book = self.find_book(book_id)
        if book is None:
            return None
        for key, value in changes.items():
            setattr(book, key, value.strip() if isinstance(value, str) else value)
        self._persist()
        logger.info(f"Updated book {book_id}: {sorted(changes)}")
        return book

    def delete_book(self, book_id: str) -> bool:
        """Remove the book. Loans that reference it are kept as they are."""
        before = len(self.books)
        self.books = [b for b in self.books if b.id != book_id]
        if len(self.books) == before:
            return False
        self._persist()
        logger.info(f"Deleted book {book_id}")
        return True

    def import_books(self, candidates: Iterable[Dict[str, Any]]) -> List[Book]:
        """Add reviewed ``{title, author, category, quantity}`` candidates.

        Unknown categories fall back to general knowledge and unusable
        quantities to one copy. Candidates without a title are skipped.
        """
        added: List[Book] = []
        for candidate in candidates:
            title = TextValidator.sanitize_text(candidate.get("title"))
            if not title:
                logger.warning(f"Skipping import candidate without a title: {candidate!r}")
                continue
            author = TextValidator.sanitize_text(candidate.get("author")) or UNKNOWN_AUTHOR
            try:
                category = Category.parse(candidate.get("category"))
            except ValueError:
                category = Category.GENERAL_KNOWLEDGE
            quantity = QuantityValidator.coerce_quantity(candidate.get("quantity"))
            added.append(self.add_book(title, author, category, quantity))
        logger.info(f"Imported {len(added)} books")
        return added

    def _restore_copy(self, book_id: str) -> None:
        book = self.find_book(book_id)
        if book is None:
            logger.warning(f"Book {book_id} no longer exists; availability not restored")
            return
        if book.available >= book.total:
            logger.warning(f"Book {book_id} already has all {book.total} copies on the shelf")
            return
        book.available += 1

    # ------------------------- Loans ------------------------- #
    def list_loans(self) -> List[Loan]:
        return list(self.loans)

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        return next((l for l in self.loans if l.id == loan_id), None)

    def active_loans(self) -> List[Loan]:
        return [l for l in self.loans if l.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)]

    def history_loans(self) -> List[Loan]:
        return [l for l in self.loans if l.status == LoanStatus.RETURNED]

    def student_loans(self, student_name: str) -> List[Loan]:
        """Loans still holding a copy for this student, matched case-insensitively."""
        key = student_name.strip().casefold()
        return [l for l in self.loans if l.holds_copy and l.student_name.strip().casefold() == key]

    def check_borrow_limit(self, student_name: str) -> None:
        if len(self.student_loans(student_name)) >= self.borrow_limit:
            raise BorrowLimitExceededError(student_name, self.borrow_limit)

    def borrow_book(
        self,
        book_id: str,
        student_name: str,
        student_class: str,
        *,
        now: Optional[datetime] = None,
        enforce_limit: bool = True,
    ) -> Loan:
        """Lend one copy of the book to a student for the loan period."""
        if not TextValidator.validate_student_name(student_name):
            raise ValueError("Student name cannot be empty.")
        if not TextValidator.validate_student_class(student_class):
            raise ValueError("Student class cannot be empty.")

        book = self.find_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        if book.available <= 0:
            raise OutOfStockError(book_id)
        if enforce_limit:
            self.check_borrow_limit(student_name)

        now = now or utcnow()
        loan = Loan(
            id=generate_loan_id(now, {l.id for l in self.loans}),
            book_id=book.id,
            book_title=book.title,
            student_name=student_name.strip(),
            student_class=student_class.strip(),
            loan_date=now,
            due_date=now + self.loan_period,
            status=LoanStatus.ACTIVE,
            is_renewed=False,
            fine_amount=0,
        )
        self.loans.append(loan)
        book.available -= 1
        self._persist()
        logger.info(f"Loan {loan.id}: {book.id} to {loan.student_name} ({loan.student_class}), due {loan.due_date:%Y-%m-%d}")
        return loan

    def return_book(self, loan_id: str, *, now: Optional[datetime] = None) -> Optional[ReturnReceipt]:
        """Check a copy back in and assess the fine.

        A late return keeps the loan in the overdue state with its return
        date set. Unknown loans and loans already checked in are left alone.
        """
        loan = self.find_loan(loan_id)
        if loan is None:
            return None
        if loan.return_date is not None:
            logger.warning(f"Loan {loan_id} was already returned on {loan.return_date:%Y-%m-%d}")
            return None

        now = now or utcnow()
        late_days = days_late(loan.due_date, now)
        fine = late_days * self.fine_per_day
        loan.return_date = now
        loan.fine_amount = fine
        loan.status = LoanStatus.RETURNED if fine == 0 else LoanStatus.OVERDUE
        self._restore_copy(loan.book_id)
        self._persist()
        logger.info(f"Loan {loan_id} returned, fine={fine}")
        return ReturnReceipt(loan=loan, fine=fine, days_late=late_days)

    def renew_loan(self, loan_id: str) -> Optional[Loan]:
        """Push the due date back once. Status and fine are not recomputed."""
        loan = self.find_loan(loan_id)
        if loan is None:
            return None
        if loan.is_renewed:
            raise AlreadyRenewedError(loan_id)
        loan.due_date = loan.due_date + self.renew_period
        loan.is_renewed = True
        self._persist()
        logger.info(f"Loan {loan_id} renewed until {loan.due_date:%Y-%m-%d}")
        return loan

    def update_loan(self, loan_id: str, update: LoanUpdate) -> Optional[Loan]:
        changes = update.changes()
        loan = self.find_loan(loan_id)
        if loan is None:
            return None
        for key, value in changes.items():
            if isinstance(value, str):
                value = value.strip()
            elif isinstance(value, datetime) and value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            setattr(loan, key, value)
        self._persist()
        logger.info(f"Updated loan {loan_id}: {sorted(changes)}")
        return loan

    def delete_loan(self, loan_id: str) -> bool:
        """Remove the loan, putting its copy back on the shelf if it still holds one."""
        loan = self.find_loan(loan_id)
        if loan is None:
            return False
        if loan.holds_copy:
            self._restore_copy(loan.book_id)
        self.loans = [l for l in self.loans if l is not loan]
        self._persist()
        logger.info(f"Deleted loan {loan_id}")
        return True

    def sweep_overdue(self, *, now: Optional[datetime] = None) -> List[Loan]:
        """Flag active loans past their due date as overdue and set their fine."""
        now = now or utcnow()
        promoted: List[Loan] = []
        for loan in self.loans:
            if loan.status == LoanStatus.ACTIVE and loan.due_date < now:
                loan.fine_amount = calculate_fine(loan.due_date, now, self.fine_per_day)
                loan.status = LoanStatus.OVERDUE
                promoted.append(loan)
        if promoted:
            self._persist()
            logger.info(f"Overdue sweep flagged {len(promoted)} loans")
        return promoted

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        active = self.active_loans()
        overdue = [l for l in self.loans if l.status == LoanStatus.OVERDUE]
        by_category = {cat.value: 0 for cat in Category}
        for book in self.books:
            by_category[book.category.value] += book.total
        return {
            "total_books": len(self.books),
            "total_copies": sum(b.total for b in self.books),
            "active_loans": len(active),
            "overdue_loans": len(overdue),
            "on_time_loans": len(active) - len(overdue),
            "total_fines": sum(l.fine_amount for l in self.loans),
            "by_category": by_category,
        }
