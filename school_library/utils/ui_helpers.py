import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.markup import escape

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def format_money(amount: int) -> str:
    return f"{amount:,} VND"


def print_book_list(books: List[Any]) -> None:
    """Print books according to the output mode.
    - plain: 'ID - Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="green")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(escape(b.id), escape(b.title), escape(b.author), b.category.value, f"{b.available}/{b.total}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available}/{b.total}]")


def print_loan_list(loans: List[Any]) -> None:
    mode = get_output_mode()

    if not loans:
        print("No loans.")
        return

    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Student")
        table.add_column("Due", no_wrap=True)
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        for l in loans:
            status_style = "red" if l.fine_amount > 0 else "green"
            table.add_row(
                escape(l.id),
                escape(l.book_title),
                escape(f"{l.student_name} ({l.student_class})"),
                f"{l.due_date:%Y-%m-%d}",
                f"[{status_style}]{l.status.value}[/]",
                format_money(l.fine_amount) if l.fine_amount else "-",
            )
        _console.print(table)
    else:
        for l in loans:
            line = f"{l.id} - {l.book_title} -> {l.student_name} ({l.student_class}) due {l.due_date:%Y-%m-%d} [{l.status.name}]"
            if l.fine_amount:
                line += f" fine {format_money(l.fine_amount)}"
            print(line)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print library statistics according to the output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    lines = [
        ("Total Titles", stats.get("total_books", 0)),
        ("Total Copies", stats.get("total_copies", 0)),
        ("Active Loans", stats.get("active_loans", 0)),
        ("Overdue Loans", stats.get("overdue_loans", 0)),
        ("Fines", format_money(stats.get("total_fines", 0))),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        by_category = stats.get("by_category") or {}
        if by_category:
            content += "\n\n" + "\n".join(f"  {name}: {count}" for name, count in by_category.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
