import logging
import subprocess
import sys
import webbrowser
from datetime import datetime
from functools import wraps
from typing import Optional

import typer
from rich.console import Console

from book import Book
from config import settings
from database import resolve_database_file
from errors import ExternalServiceError, LibraryError
from library import Library
from loan import LoanStatus
from loans import LoanLedger
from user import Role, User
from users import Users, require_role
from utils.ui_helpers import (
    print_books,
    print_loan_result,
    print_loans,
    print_stats_result,
    set_output_mode,
)
from wishlist import Wishlist

APP_NAME = "Library CLI"
DATE_FORMATS = ["%Y-%m-%d"]

console = Console()
logger = logging.getLogger(__name__)


class LibraryManager:
    """Holds one set of stores per database file."""

    _instance: Optional["LibraryManager"] = None

    def __init__(self) -> None:
        self.library = Library()
        self.users = Users(self.library.db_file)
        self.wishlist = Wishlist(self.library.db_file)
        self.ledger = LoanLedger(self.library, self.wishlist)
        self.admin = self.users.ensure_admin()

    @classmethod
    def get_instance(cls) -> "LibraryManager":
        # Rebuild when the database file changes (e.g. a per-test database).
        if cls._instance is None or cls._instance.library.db_file != resolve_database_file():
            cls._instance = cls()
        return cls._instance


_acting_email: Optional[str] = None


def _actor(manager: LibraryManager) -> User:
    """The user commands act as: --as EMAIL, or the bootstrap admin."""
    if not _acting_email:
        return manager.admin
    user = manager.users.find_by_email(_acting_email)
    if not user:
        raise LookupError(f"No user with email {_acting_email}.")
    return user


def handle_errors(func):
    """Print library failures as 'Error: ...' and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (LibraryError, ValueError, LookupError, ExternalServiceError) as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper


def _as_date(value: Optional[datetime]):
    return value.date() if value else None


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich"),
    acting_as: Optional[str] = typer.Option(None, "--as", help="Email of the acting user (default: bootstrap admin)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log messages"),
):
    """Global options for every command."""
    global _acting_email
    if output:
        set_output_mode(output)
    _acting_email = acting_as
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


# --- Catalog ---
@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Title, author or ISBN"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
):
    """List books with their availability."""
    print_books(LibraryManager.get_instance().library.list_books(search=search, category=category))


@app.command("add-book")
@handle_errors
def cli_add_book(
    title: str,
    author: str,
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    quantity: int = typer.Option(1, "--quantity", "-q", min=0),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
):
    """Add a book to the catalog by hand."""
    manager = LibraryManager.get_instance()
    require_role(_actor(manager), Role.ADMIN)
    book = manager.library.add_book(Book(title, author, isbn, quantity=quantity, category=category))
    print(f"Added: #{book.id} {book.title} by {book.author} ({book.quantity} copies)")


@app.command("import-isbn")
@handle_errors
def cli_import_isbn(isbn: str, quantity: int = typer.Option(1, "--quantity", "-q", min=0)):
    """Add a book using Open Library metadata."""
    manager = LibraryManager.get_instance()
    require_role(_actor(manager), Role.ADMIN)
    book = manager.library.add_book_by_isbn(isbn, quantity=quantity)
    print(f"Added: #{book.id} {book.title} by {book.author} ({book.quantity} copies)")


# --- Loans ---
@app.command("loans")
@handle_errors
def cli_loans(
    status: Optional[LoanStatus] = typer.Option(None, "--status"),
    user_id: Optional[int] = typer.Option(None, "--user-id"),
    search: Optional[str] = typer.Option(None, "--search", "-s"),
):
    """List loans, newest first. Borrowers only see their own."""
    manager = LibraryManager.get_instance()
    actor = _actor(manager)
    if not actor.is_admin:
        user_id = actor.id
    print_loans(manager.ledger.list_loans(status=status, user_id=user_id, search=search))


@app.command("overdue")
@handle_errors
def cli_overdue():
    """List approved loans past their due date."""
    manager = LibraryManager.get_instance()
    require_role(_actor(manager), Role.ADMIN)
    print_loans(manager.ledger.list_overdue())


@app.command("request")
@handle_errors
def cli_request(
    book_id: int,
    loan_date: Optional[datetime] = typer.Option(None, "--loan-date", formats=DATE_FORMATS),
    due_date: Optional[datetime] = typer.Option(None, "--due", formats=DATE_FORMATS),
):
    """Request a loan for the acting user."""
    manager = LibraryManager.get_instance()
    loan = manager.ledger.request(_actor(manager), book_id, _as_date(loan_date), _as_date(due_date))
    print_loan_result("requested", loan)


@app.command("approve")
@handle_errors
def cli_approve(loan_id: int):
    """Approve a pending loan."""
    manager = LibraryManager.get_instance()
    print_loan_result("approved", manager.ledger.approve(_actor(manager), loan_id))


@app.command("reject")
@handle_errors
def cli_reject(loan_id: int, reason: str = typer.Option("", "--reason", "-r", help="Shown to the borrower")):
    """Reject a pending loan."""
    manager = LibraryManager.get_instance()
    print_loan_result("rejected", manager.ledger.reject(_actor(manager), loan_id, reason))


@app.command("return")
@handle_errors
def cli_return(
    loan_id: int,
    return_date: Optional[datetime] = typer.Option(None, "--date", formats=DATE_FORMATS),
    fine: Optional[int] = typer.Option(None, "--fine", min=0, help="Charge this instead of the computed fine"),
):
    """Record a returned book and charge any overdue fine."""
    manager = LibraryManager.get_instance()
    loan = manager.ledger.return_loan(_actor(manager), loan_id, _as_date(return_date), fine)
    print_loan_result("returned", loan)


@app.command("fine")
@handle_errors
def cli_fine(loan_id: int, return_date: Optional[datetime] = typer.Option(None, "--date", formats=DATE_FORMATS)):
    """Show the fine a return would charge."""
    manager = LibraryManager.get_instance()
    require_role(_actor(manager), Role.ADMIN)
    fine = manager.ledger.preview_fine(loan_id, _as_date(return_date))
    print(f"Fine for loan #{loan_id}: {fine}")


# --- Users ---
@app.command("users")
@handle_errors
def cli_users():
    """List user accounts."""
    manager = LibraryManager.get_instance()
    require_role(_actor(manager), Role.ADMIN)
    for user in manager.users.list_users():
        print(f"{user.id} - {user.name} <{user.email}> [{user.role.value}]")


@app.command("add-user")
@handle_errors
def cli_add_user(name: str, email: str, admin: bool = typer.Option(False, "--admin")):
    """Create an account and print its API token."""
    manager = LibraryManager.get_instance()
    require_role(_actor(manager), Role.ADMIN)
    user = manager.users.create_user(name, email, Role.ADMIN if admin else Role.USER)
    print(f"Created user #{user.id} {user.email} ({user.role.value})")
    print(f"API token: {user.api_token}")


@app.command("stats")
@handle_errors
def cli_stats():
    """Show the dashboard counters for the acting user."""
    manager = LibraryManager.get_instance()
    actor = _actor(manager)
    if actor.is_admin:
        stats = dict(manager.library.get_statistics())
        stats.update({f"{status}_loans": n for status, n in manager.ledger.count_by_status().items()})
        print_stats_result(stats, title="Library")
    else:
        print_stats_result(manager.ledger.borrower_stats(actor.id), title=actor.name)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    open_browser: bool = typer.Option(False, "--open", help="Open the API docs in a browser"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if open_browser:
        webbrowser.open(url)
    logger.info(f"Launching uvicorn for {resolve_database_file()}")
    try:
        subprocess.run([sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)], check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` is not installed in this environment.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
