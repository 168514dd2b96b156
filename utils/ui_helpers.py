import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "approved": "green",
    "returned": "cyan",
    "rejected": "red",
}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: '<id> - Title by Author [available/quantity]' lines, or 'No books in library.'
    - json: array of book dicts
    - rich: table
    """
    if not books:
        print("No books in library.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Category")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.category or "", f"{b.available}/{b.quantity}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available}/{b.quantity}]")


def print_loans(loans: List[Any]) -> None:
    if not loans:
        print("No loans found.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Loan date")
        table.add_column("Due date")
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        for loan in loans:
            status = loan.status.value
            if loan.is_overdue():
                status += " (overdue)"
            style = STATUS_STYLES.get(loan.status.value, "white")
            table.add_row(
                str(loan.id),
                loan.book_title or str(loan.book_id),
                loan.borrower_name or str(loan.user_id),
                loan.loan_date.isoformat(),
                loan.due_date.isoformat(),
                f"[{style}]{status}[/]",
                "" if loan.fine is None else f"{loan.fine:,}",
            )
        _console.print(table)
    else:
        for loan in loans:
            line = (
                f"#{loan.id} {loan.book_title or loan.book_id} - {loan.borrower_name or loan.user_id} "
                f"[{loan.status.value}] due {loan.due_date.isoformat()}"
            )
            if loan.is_overdue():
                line += " OVERDUE"
            if loan.fine is not None:
                line += f" fine {loan.fine}"
            print(line)


def print_loan_result(action: str, loan: Any) -> None:
    """One-line confirmation after a loan transition."""
    if get_output_mode() == "json":
        print(json.dumps(loan.to_dict(), ensure_ascii=False))
        return
    message = f"Loan #{loan.id} {action}: {loan.book_title or loan.book_id} [{loan.status.value}]"
    if loan.fine is not None:
        message += f" fine {loan.fine}"
    print(message)


def print_stats_result(stats: Dict[str, Any], title: str = "Stats") -> None:
    """Print statistics in the current output mode."""
    if not stats:
        print("No statistics available.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{_label(k)}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title=f"📊 {title}", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{_label(key)}: {value}")


def _label(key: str) -> str:
    return key.replace("_", " ").title()
