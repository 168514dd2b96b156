import os
from datetime import date

import pytest

from book import Book
from library import Library
from loans import LoanLedger
from user import Role
from users import Users
from wishlist import Wishlist


@pytest.fixture
def db_file(tmp_path, request):
    # A separate database file for every test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def users(lib):
    return Users(lib.db_file)


@pytest.fixture
def wishlist(lib):
    return Wishlist(lib.db_file)


@pytest.fixture
def ledger(lib, wishlist):
    return LoanLedger(lib, wishlist, loan_period_days=14, fine_per_day=5000)


@pytest.fixture
def admin(users):
    return users.create_user("Ada Admin", "ada@example.com", Role.ADMIN)


@pytest.fixture
def member(users):
    return users.create_user("Bob Reader", "bob@example.com")


@pytest.fixture
def other_member(users):
    return users.create_user("Cleo Reader", "cleo@example.com")


@pytest.fixture
def make_book(lib):
    def _make(title="Dune", author="Frank Herbert", quantity=1, **kwargs):
        return lib.add_book(Book(title, author, quantity=quantity, **kwargs))
    return _make


@pytest.fixture
def day():
    """Fixed calendar used by loan tests: day(0) is the loan date."""
    start = date(2024, 3, 1)

    def _day(offset: int) -> date:
        return date.fromordinal(start.toordinal() + offset)
    return _day


@pytest.fixture
def cli_db(db_file, monkeypatch):
    """Point the CLI (which resolves its database from the environment) at the test file."""
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    yield db_file
    if os.path.exists(db_file):
        os.remove(db_file)
