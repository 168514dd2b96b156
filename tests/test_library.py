import httpx
import pytest

from book import Book
from errors import ExternalServiceError, InvalidState, NotFound, OutOfStock
from database import transaction
from library import Library


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload


OPEN_LIBRARY_CLEAN_CODE = {
    "ISBN:9780132350884": {
        "title": "Clean Code",
        "authors": [{"name": "Robert C. Martin"}],
        "publishers": [{"name": "Prentice Hall"}],
        "publish_date": "August 2008",
        "subjects": [{"name": "Software engineering"}, {"name": "Agile"}],
        "number_of_pages": 431,
        "cover": {"large": "https://covers.openlibrary.org/b/id/1-L.jpg"},
    }
}


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.add_book(Book("Ulysses", "James Joyce", "978-0-19-953567-5", quantity=3))

    assert book.id is not None
    assert book.isbn == "9780199535675"
    assert (book.quantity, book.available) == (3, 3)
    assert lib.find_by_isbn("9780199535675").title == "Ulysses"
    assert [b.title for b in lib.list_books()] == ["Ulysses"]


def test_add_duplicate_isbn(lib):
    lib.add_book(Book("Test Book", "Test Author", "9780306406157"))

    with pytest.raises(ValueError, match="Book with ISBN 9780306406157 already exists."):
        lib.add_book(Book("Test Book", "Test Author", "9780306406157"))

    assert len(lib.list_books()) == 1


@pytest.mark.parametrize("title, author, isbn", [
    ("", "Author", None),
    ("Title", "12345", None),
    ("Title", "Author", "12345"),
])
def test_add_book_validation(lib, title, author, isbn):
    with pytest.raises(ValueError):
        lib.add_book(Book(title, author, isbn))


def test_add_book_rejects_inconsistent_stock(lib):
    with pytest.raises(ValueError):
        lib.add_book(Book("Dune", "Frank Herbert", quantity=1, available=2))
    with pytest.raises(ValueError):
        lib.add_book(Book("Dune", "Frank Herbert", quantity=-1))


def test_persistence(lib):
    lib.add_book(Book("Sapiens", "Yuval Noah Harari", "9780099590088"))

    # New instance should read persisted data from SQLite
    lib2 = Library(db_file=lib.db_file)
    assert len(lib2.list_books()) == 1
    assert lib2.find_by_isbn("9780099590088").title == "Sapiens"


def test_get_book_unknown_id(lib):
    assert lib.find_book(123) is None
    with pytest.raises(NotFound):
        lib.get_book(123)


def test_list_books_search_and_category(lib, make_book):
    make_book("Dune", "Frank Herbert", category="Science Fiction")
    make_book("emma", "Jane Austen", category="Classics")
    make_book("Persuasion", "Jane Austen", category="Classics")

    assert [b.title for b in lib.list_books()] == ["Dune", "emma", "Persuasion"]
    assert [b.title for b in lib.list_books(search="austen")] == ["emma", "Persuasion"]
    assert [b.title for b in lib.list_books(category="Science Fiction")] == ["Dune"]
    assert [b.title for b in lib.list_books(search="Emma", category="Classics")] == ["emma"]
    assert lib.list_categories() == ["Classics", "Science Fiction"]


def test_update_book_partial(lib, make_book):
    book = make_book("Original Title", "Original Author")

    updated = lib.update_book(book.id, title="Only Title Changed")
    assert updated.title == "Only Title Changed"
    assert updated.author == "Original Author"


def test_update_book_rejects_unknown_fields(lib, make_book):
    book = make_book()
    with pytest.raises(ValueError):
        lib.update_book(book.id, available=0)
    with pytest.raises(ValueError):
        lib.update_book(book.id)
    with pytest.raises(NotFound):
        lib.update_book(999, title="Nothing")


def test_update_quantity_keeps_copies_on_loan(lib, ledger, admin, member, make_book, day):
    book = make_book(quantity=3)
    loan = ledger.request(member, book.id, day(0))
    ledger.approve(admin, loan.id)

    grown = lib.update_book(book.id, quantity=5)
    assert (grown.quantity, grown.available) == (5, 4)

    shrunk = lib.update_book(book.id, quantity=1)
    assert (shrunk.quantity, shrunk.available) == (1, 0)

    with pytest.raises(InvalidState):
        lib.update_book(book.id, quantity=0)
    with pytest.raises(ValueError):
        lib.update_book(book.id, quantity=-1)


def test_remove(lib, make_book):
    book = make_book()
    assert lib.remove_book(book.id) is True
    assert lib.remove_book(book.id) is False  # Should return False if not found


def test_remove_book_on_loan_fails(lib, ledger, admin, member, make_book, day):
    book = make_book()
    loan = ledger.request(member, book.id, day(0))
    ledger.approve(admin, loan.id)

    with pytest.raises(InvalidState):
        lib.remove_book(book.id)

    ledger.return_loan(admin, loan.id, day(3))
    assert lib.remove_book(book.id) is True
    assert ledger.list_loans() == []


def test_get_statistics(lib, make_book):
    make_book("Dune", "Frank Herbert", quantity=2)
    make_book("Emma", "Jane Austen", quantity=1)
    make_book("Persuasion", "Jane Austen", quantity=4, available=1)

    assert lib.get_statistics() == {
        "total_books": 3,
        "total_copies": 7,
        "available_copies": 4,
        "unique_authors": 2,
    }


def test_checkout_and_checkin_copy_bounds(lib, make_book):
    book = make_book(quantity=1)

    with transaction(lib.db_file) as conn:
        assert lib.checkout_copy(conn, book.id) == 0
    with pytest.raises(OutOfStock):
        with transaction(lib.db_file) as conn:
            lib.checkout_copy(conn, book.id)

    with transaction(lib.db_file) as conn:
        assert lib.checkin_copy(conn, book.id) == 1
    with pytest.raises(InvalidState):
        with transaction(lib.db_file) as conn:
            lib.checkin_copy(conn, book.id)

    with pytest.raises(NotFound):
        with transaction(lib.db_file) as conn:
            lib.checkout_copy(conn, 999)


def test_stock_change_rolls_back_with_transaction(lib, make_book):
    book = make_book(quantity=2)

    with pytest.raises(RuntimeError):
        with transaction(lib.db_file) as conn:
            lib.checkout_copy(conn, book.id)
            raise RuntimeError("loan update failed")

    assert lib.get_book(book.id).available == 2


def test_add_book_by_isbn(lib, monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse(OPEN_LIBRARY_CLEAN_CODE)

    monkeypatch.setattr("library.httpx.get", fake_get)

    book = lib.add_book_by_isbn("978-0-13-235088-4", quantity=2)

    assert "bibkeys=ISBN:9780132350884" in calls[0]
    assert book.title == "Clean Code"
    assert book.author == "Robert C. Martin"
    assert book.publisher == "Prentice Hall"
    assert book.published_year == 2008
    assert book.category == "Software engineering"
    assert book.pages == 431
    assert book.cover_url.endswith("1-L.jpg")
    assert (book.quantity, book.available) == (2, 2)


def test_add_book_by_isbn_not_found(lib, monkeypatch):
    monkeypatch.setattr("library.httpx.get", lambda url, timeout: FakeResponse({}))

    with pytest.raises(LookupError, match="Book not found."):
        lib.add_book_by_isbn("9780306406157")
    assert lib.list_books() == []


def test_add_book_by_isbn_invalid(lib):
    with pytest.raises(ValueError):
        lib.add_book_by_isbn("")
    with pytest.raises(ValueError):
        lib.add_book_by_isbn("9780306406158")


def test_add_book_by_isbn_service_unreachable(lib, monkeypatch):
    def failing_get(url, timeout):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("library.httpx.get", failing_get)
    monkeypatch.setattr("library.time.sleep", lambda seconds: None)

    with pytest.raises(ExternalServiceError):
        lib.add_book_by_isbn("9780306406157")
