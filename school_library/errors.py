"""Errors raised by the loan lifecycle engine.

All of them leave the library unchanged. Callers (API, CLI) translate them
into user-facing messages.
"""


class LibraryError(Exception):
    """Base class for library operation failures."""
    pass


class NotFoundError(LibraryError, LookupError):
    pass


class BookNotFoundError(NotFoundError):
    def __init__(self, book_id: str):
        super().__init__(f"Book {book_id} not found.")
        self.book_id = book_id


class OutOfStockError(LibraryError):
    def __init__(self, book_id: str):
        super().__init__(f"Book {book_id} has no copies available.")
        self.book_id = book_id


class AlreadyRenewedError(LibraryError):
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} has already been renewed once.")
        self.loan_id = loan_id


class BorrowLimitExceededError(LibraryError):
    def __init__(self, student_name: str, limit: int):
        super().__init__(f"{student_name} already has {limit} books on loan.")
        self.student_name = student_name
        self.limit = limit


class IdSpaceExhaustedError(LibraryError):
    """No free book id is left for a category prefix."""
    pass
