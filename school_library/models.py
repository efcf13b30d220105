from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Category(Enum):
    """Book categories. Values are the labels stored in persisted data."""

    LITERATURE = "Văn học"
    SCIENCE = "Khoa học"
    HISTORY_GEOGRAPHY = "Lịch sử - Địa lý"
    ENGLISH = "Tiếng Anh"
    LIFE_SKILLS = "Kỹ năng sống"
    REFERENCE = "Tham khảo"
    GENERAL_KNOWLEDGE = "Kiến thức chung"

    @property
    def prefix(self) -> str:
        return _CATEGORY_PREFIXES[self]

    @property
    def english_name(self) -> str:
        return _CATEGORY_ENGLISH[self]

    @classmethod
    def parse(cls, raw: Any) -> "Category":
        """Accept a stored label, an English name, a member name or a 2-letter prefix."""
        if isinstance(raw, Category):
            return raw
        key = str(raw or "").strip().casefold()
        for cat in cls:
            candidates = (cat.value, cat.name, cat.name.replace("_", "-"), cat.english_name, cat.prefix)
            if key in (c.casefold() for c in candidates):
                return cat
        raise ValueError(f"Unknown category: {raw!r}")


_CATEGORY_PREFIXES = {
    Category.LITERATURE: "VH",
    Category.SCIENCE: "KH",
    Category.HISTORY_GEOGRAPHY: "LS",
    Category.ENGLISH: "TA",
    Category.LIFE_SKILLS: "KT",
    Category.REFERENCE: "TK",
    Category.GENERAL_KNOWLEDGE: "KN",
}

_CATEGORY_ENGLISH = {
    Category.LITERATURE: "Literature",
    Category.SCIENCE: "Science",
    Category.HISTORY_GEOGRAPHY: "History-Geography",
    Category.ENGLISH: "English",
    Category.LIFE_SKILLS: "Life-Skills",
    Category.REFERENCE: "Reference",
    Category.GENERAL_KNOWLEDGE: "General-Knowledge",
}


class LoanStatus(Enum):
    ACTIVE = "Đang mượn"
    RETURNED = "Đã trả"
    OVERDUE = "Quá hạn"

    @classmethod
    def parse(cls, raw: Any) -> "LoanStatus":
        if isinstance(raw, LoanStatus):
            return raw
        key = str(raw or "").strip().casefold()
        for status in cls:
            if key in (status.value.casefold(), status.name.casefold()):
                return status
        raise ValueError(f"Unknown loan status: {raw!r}")


# --- Timestamps ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO 8601 string. Date-only and naive values are taken as UTC."""
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# --- Entities ---

@dataclass
class Book:
    """A catalog entry: one title with a number of physical copies."""

    id: str
    title: str
    author: str
    category: Category
    total: int
    available: int

    def __str__(self) -> str:
        return f"{self.id} - {self.title} by {self.author} ({self.available}/{self.total})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category.value,
            "total": self.total,
            "available": self.available,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=str(data["id"]),
            title=data.get("title", ""),
            author=data.get("author", ""),
            category=Category.parse(data.get("category")),
            total=int(data.get("total", 0)),
            available=int(data.get("available", 0)),
        )


@dataclass
class Loan:
    """A borrowing record for one copy of a book."""

    id: str
    book_id: str
    book_title: str
    student_name: str
    student_class: str
    loan_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    is_renewed: bool = False
    fine_amount: int = 0
    return_date: Optional[datetime] = None

    @property
    def holds_copy(self) -> bool:
        """True while the borrowed copy is still off the shelf."""
        return self.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE) and self.return_date is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "bookId": self.book_id,
            "bookTitle": self.book_title,
            "studentName": self.student_name,
            "studentClass": self.student_class,
            "loanDate": format_timestamp(self.loan_date),
            "dueDate": format_timestamp(self.due_date),
            "status": self.status.value,
            "isRenewed": self.is_renewed,
            "fineAmount": self.fine_amount,
        }
        if self.return_date is not None:
            data["returnDate"] = format_timestamp(self.return_date)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Loan":
        return_date = data.get("returnDate")
        return Loan(
            id=str(data["id"]),
            book_id=str(data["bookId"]),
            book_title=data.get("bookTitle", ""),
            student_name=data.get("studentName", ""),
            student_class=data.get("studentClass", ""),
            loan_date=parse_timestamp(data["loanDate"]),
            due_date=parse_timestamp(data["dueDate"]),
            status=LoanStatus.parse(data.get("status", LoanStatus.ACTIVE)),
            is_renewed=bool(data.get("isRenewed", False)),
            fine_amount=int(data.get("fineAmount", 0)),
            return_date=parse_timestamp(return_date) if return_date else None,
        )


# --- Partial updates ---

@dataclass
class BookUpdate:
    """Administrative edit of a book. Only fields that are set are applied."""

    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[Category] = None
    total: Optional[int] = None
    available: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class LoanUpdate:
    """Administrative correction of a loan (borrower details or due date)."""

    student_name: Optional[str] = None
    student_class: Optional[str] = None
    due_date: Optional[datetime] = None

    def changes(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class LibrarySnapshot:
    """Full contents of the library, as persisted."""

    books: List[Book] = field(default_factory=list)
    loans: List[Loan] = field(default_factory=list)
