import asyncio
import json
import logging
import os
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm

from school_library import auth
from school_library.config import settings
from school_library.database import resolve_db_file
from school_library.errors import AlreadyRenewedError, BorrowLimitExceededError, LibraryError, NotFoundError
from school_library.library import Library
from school_library.models import BookUpdate, Category, LoanUpdate, parse_timestamp
from school_library.services.file_parser import parse_file
from school_library.services.gemini_service import AVAILABLE_MODELS, DEFAULT_MODEL, GeminiService
from school_library.storage import (
    KeyValueStore,
    SnapshotPersistence,
    SQLiteKeyValueStore,
    get_stored_api_key,
    get_stored_model,
    save_api_key,
    save_model,
)
from school_library.utils.ui_helpers import (
    get_output_mode,
    print_book_list,
    print_loan_list,
    print_stats_result,
    set_output_mode,
)

logger = logging.getLogger(__name__)

console = Console()


class LibraryManager:
    """One store and one Library per database file.

    Both are rebuilt when LIBRARY_DB_FILE points somewhere else (e.g. a
    per-test database).
    """
    _store: Optional[KeyValueStore] = None
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def _refresh(cls) -> None:
        current_db = resolve_db_file()
        if cls._store is None or current_db != cls._db_file_snapshot:
            cls._store = SQLiteKeyValueStore(current_db)
            cls._instance = None
            cls._db_file_snapshot = current_db

    @classmethod
    def get_store(cls) -> KeyValueStore:
        cls._refresh()
        return cls._store

    @classmethod
    def get_instance(cls) -> Library:
        cls._refresh()
        if cls._instance is None:
            cls._instance = Library(SnapshotPersistence(cls._store))
        return cls._instance


def _require_session() -> bool:
    if auth.is_logged_in(LibraryManager.get_store()):
        return True
    print("Please log in first: school-library login <username>")
    return False


def _ai_service() -> GeminiService:
    store = LibraryManager.get_store()
    return GeminiService(api_key=get_stored_api_key(store), model=get_stored_model(store, DEFAULT_MODEL))


def _parse_category_option(raw: str) -> Optional[Category]:
    try:
        return Category.parse(raw)
    except ValueError as e:
        print(f"Error: {e}")
        return None


# --- Typer CLI ---
app = typer.Typer(help="School library CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)


# --- Books ---
@app.command("list")
def cli_list(available: bool = typer.Option(False, "--available", help="Only books with copies on the shelf")):
    """List all books."""
    lib = LibraryManager.get_instance()
    print_book_list(lib.available_books() if available else lib.list_books())


@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Title, author or id")):
    """Search books by title, author or id."""
    books = LibraryManager.get_instance().search_books(query)
    if not books:
        print(f"No books match '{query}'.")
        return
    print_book_list(books)


@app.command("find")
def cli_find(book_id: str):
    """Show the details of one book."""
    book = LibraryManager.get_instance().find_book(book_id)
    if not book:
        print(f"Book {book_id} not found.")
        return
    if get_output_mode() == "json":
        print(json.dumps(book.to_dict(), ensure_ascii=False))
        return
    print("Book Found")
    print(f"ID: {book.id}")
    print(f"Title: {book.title}")
    print(f"Author: {book.author}")
    print(f"Category: {book.category.value}")
    print(f"Copies: {book.available}/{book.total}")


@app.command("add")
def cli_add(
    title: str,
    author: str = typer.Option("", "--author", "-a"),
    category: str = typer.Option(..., "--category", "-c", help="Label, English name or code (VH, KH, LS, TA, KT, TK, KN)"),
    total: int = typer.Option(1, "--total", "-n", min=0),
):
    """Add a book with TOTAL copies on the shelf."""
    if not _require_session():
        return
    parsed = _parse_category_option(category)
    if parsed is None:
        return
    try:
        book = LibraryManager.get_instance().add_book(title, author, parsed, total)
    except (ValueError, LibraryError) as e:
        print(f"Error: {e}")
        return
    print(f"Successfully added: {book.id} - {book.title}")


@app.command("update")
def cli_update(
    book_id: str,
    title: Optional[str] = typer.Option(None, "--title"),
    author: Optional[str] = typer.Option(None, "--author"),
    category: Optional[str] = typer.Option(None, "--category"),
    total: Optional[int] = typer.Option(None, "--total", min=0),
    available: Optional[int] = typer.Option(None, "--available", min=0),
):
    """Change fields of a book. Only the given options are updated."""
    if not _require_session():
        return
    parsed = None
    if category is not None:
        parsed = _parse_category_option(category)
        if parsed is None:
            return
    update = BookUpdate(title=title, author=author, category=parsed, total=total, available=available)
    if not update.changes():
        print("Nothing to update.")
        return
    try:
        book = LibraryManager.get_instance().update_book(book_id, update)
    except ValueError as e:
        print(f"Error: {e}")
        return
    if not book:
        print(f"Book {book_id} not found.")
        return
    print(f"Updated: {book.id} - {book.title} [{book.available}/{book.total}]")


@app.command("remove")
def cli_remove(book_id: str):
    """Delete a book. Its loans are kept."""
    if not _require_session():
        return
    if LibraryManager.get_instance().delete_book(book_id):
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")


# --- Loans ---
@app.command("borrow")
def cli_borrow(
    book_id: str,
    student_name: str,
    student_class: str,
    no_limit: bool = typer.Option(False, "--no-limit", help="Skip the per-student borrow limit"),
):
    """Lend a copy of a book to a student."""
    if not _require_session():
        return
    try:
        loan = LibraryManager.get_instance().borrow_book(
            book_id, student_name, student_class, enforce_limit=not no_limit
        )
    except NotFoundError as e:
        print(f"Not found: {e}")
        return
    except BorrowLimitExceededError as e:
        print(f"Limit reached: {e}")
        return
    except (ValueError, LibraryError) as e:
        print(f"Error: {e}")
        return
    print(f"Loan {loan.id} created. Due {loan.due_date:%Y-%m-%d}.")


@app.command("return")
def cli_return(loan_id: str):
    """Check a loan back in and show any fine."""
    if not _require_session():
        return
    receipt = LibraryManager.get_instance().return_book(loan_id)
    if receipt is None:
        print(f"Loan {loan_id} not found or already returned.")
        return
    print(receipt.message)


@app.command("renew")
def cli_renew(loan_id: str):
    """Extend a loan once."""
    if not _require_session():
        return
    try:
        loan = LibraryManager.get_instance().renew_loan(loan_id)
    except AlreadyRenewedError as e:
        print(f"Error: {e}")
        return
    if loan is None:
        print(f"Loan {loan_id} not found.")
        return
    print(f"Loan {loan.id} renewed. New due date {loan.due_date:%Y-%m-%d}.")


@app.command("loans")
def cli_loans(
    status: str = typer.Option("active", "--status", "-s", help="active | history | all"),
    student: Optional[str] = typer.Option(None, "--student", help="Loans still held by this student"),
):
    """List loans."""
    lib = LibraryManager.get_instance()
    if student:
        loans = lib.student_loans(student)
    elif status == "active":
        loans = lib.active_loans()
    elif status == "history":
        loans = lib.history_loans()
    elif status == "all":
        loans = lib.list_loans()
    else:
        print(f"Unknown status: {status}. Use active, history or all.")
        return
    print_loan_list(loans)


@app.command("edit-loan")
def cli_edit_loan(
    loan_id: str,
    student_name: Optional[str] = typer.Option(None, "--student-name"),
    student_class: Optional[str] = typer.Option(None, "--student-class"),
    due_date: Optional[str] = typer.Option(None, "--due", help="New due date, e.g. 2024-05-01"),
):
    """Correct the borrower or due date of a loan."""
    if not _require_session():
        return
    due = None
    if due_date:
        try:
            due = parse_timestamp(due_date)
        except ValueError:
            print(f"Invalid date: {due_date}")
            return
    update = LoanUpdate(student_name=student_name, student_class=student_class, due_date=due)
    if not update.changes():
        print("Nothing to update.")
        return
    loan = LibraryManager.get_instance().update_loan(loan_id, update)
    if loan is None:
        print(f"Loan {loan_id} not found.")
        return
    print(f"Updated loan {loan.id}: {loan.student_name} ({loan.student_class}), due {loan.due_date:%Y-%m-%d}")


@app.command("delete-loan")
def cli_delete_loan(loan_id: str):
    """Delete a loan record."""
    if not _require_session():
        return
    if LibraryManager.get_instance().delete_loan(loan_id):
        print(f"Loan {loan_id} has been deleted.")
    else:
        print(f"Loan {loan_id} not found.")


@app.command("sweep")
def cli_sweep():
    """Flag loans past their due date as overdue."""
    if not _require_session():
        return
    promoted = LibraryManager.get_instance().sweep_overdue()
    print(f"{len(promoted)} loan(s) flagged overdue.")


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


# --- Session and settings ---
@app.command("login")
def cli_login(
    username: str,
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
):
    """Log in as the librarian."""
    user = auth.login(LibraryManager.get_store(), username, password)
    if user is None:
        print("Invalid username or password.")
        raise typer.Exit(code=1)
    print(f"Welcome, {user}.")


@app.command("logout")
def cli_logout():
    """Close the librarian session."""
    if auth.logout(LibraryManager.get_store()):
        print("Logged out.")
    else:
        print("No active session.")


@app.command("set-key")
def cli_set_key(api_key: str):
    """Store the Gemini API key."""
    if not _require_session():
        return
    save_api_key(LibraryManager.get_store(), api_key.strip())
    print("API key saved.")


@app.command("set-model")
def cli_set_model(model: str = typer.Argument(..., help=f"One of: {', '.join(AVAILABLE_MODELS)}")):
    """Choose the preferred Gemini model."""
    if not _require_session():
        return
    if model not in AVAILABLE_MODELS:
        print(f"Unknown model: {model}. Available: {', '.join(AVAILABLE_MODELS)}")
        return
    save_model(LibraryManager.get_store(), model)
    print(f"Model set to {model}.")


# --- AI assistant ---
@app.command("recommend")
def cli_recommend(query: str):
    """Ask the AI assistant for book suggestions on a topic."""
    lib = LibraryManager.get_instance()
    result = asyncio.run(_ai_service().get_book_recommendations(query, [b.title for b in lib.books]))
    if result.error:
        print(result.error)
        return
    if get_output_mode() == "json":
        print(json.dumps(result.to_dict(), ensure_ascii=False))
        return
    for rec in result.recommendations:
        print(f"{rec.title} - {rec.author} [{rec.category}]")
        print(f"  {rec.reason}")
    print(f"(model: {result.used_model})")


@app.command("import-file")
def cli_import_file(
    file_path: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Import without asking for confirmation"),
):
    """Extract books from a Word, PDF or Excel file and add them."""
    if not _require_session():
        return
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return
    with open(file_path, "rb") as f:
        data = f.read()

    parsed = parse_file(os.path.basename(file_path), data)
    if not parsed.success:
        print(parsed.error)
        return
    if not parsed.content.strip():
        print("The file contains no text.")
        return

    with console.status("[bold green]Analysing document..."):
        result = asyncio.run(_ai_service().extract_books_from_text(parsed.content, is_table_data=parsed.is_table))
    if result.error:
        print(result.error)
        return
    if not result.books:
        print("No books found in the file.")
        return

    print(f"Found {len(result.books)} book(s):")
    for i, book in enumerate(result.books, 1):
        print(f"[{i}] {book.title} - {book.author} ({book.category}) x{book.quantity}")

    if not yes and not Confirm.ask(f"Add these {len(result.books)} book(s)?", default=True):
        print("Import cancelled.")
        return

    added = LibraryManager.get_instance().import_books([b.to_dict() for b in result.books])
    if get_output_mode() == "rich":
        console.print(Panel.fit(
            "\n".join(f"[green]+[/] {escape(b.id)} {escape(b.title)}" for b in added),
            title=f"Imported {len(added)} book(s)",
            border_style="green",
        ))
    else:
        print(f"Imported {len(added)} book(s).")


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        logger.warning("Could not open a browser")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "school_library.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            proc = subprocess.Popen(args, start_new_session=os.name != "nt")
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
        else:
            args.append("--reload")
            subprocess.run(args)
    except FileNotFoundError:
        print("Error: uvicorn could not be started. Make sure it is installed.")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
