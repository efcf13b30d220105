import re
from typing import Any, Optional


class TextValidator:
    """Basic text validation and sanitization for catalog and borrower fields."""

    @staticmethod
    def _is_non_empty(text: Optional[str]) -> bool:
        return text is not None and bool(text.strip())

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        # allow digits and punctuation ("1984", "Toán 10"), reject blanks
        return TextValidator._is_non_empty(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if not TextValidator._is_non_empty(author):
            return False
        return not author.strip().isdigit()

    @staticmethod
    def validate_student_name(name: Optional[str]) -> bool:
        if not TextValidator._is_non_empty(name):
            return False
        return any(c.isalpha() for c in name)

    @staticmethod
    def validate_student_class(student_class: Optional[str]) -> bool:
        # class codes look like "10A1", "12A"; only require something printable
        return TextValidator._is_non_empty(student_class)

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # naive sanitization: strip HTML tags and collapse whitespace
        cleaned = re.sub(r"<[^>]*>", "", text)
        return re.sub(r"\s+", " ", cleaned).strip()


class QuantityValidator:
    """Copy counts coming from forms, files and AI extraction."""

    @staticmethod
    def validate_count(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and value >= 0

    @staticmethod
    def coerce_quantity(value: Any, default: int = 1) -> int:
        """Best-effort positive integer; anything unusable becomes ``default``."""
        try:
            number = int(float(value))
        except (TypeError, ValueError):
            return default
        return number if number > 0 else default
