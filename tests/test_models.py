from datetime import date

import pytest

from book import Book
from loan import Loan, LoanStatus, compute_fine, days_late
from utils.validators import ISBNValidator, TextValidator, validate_stock


@pytest.mark.parametrize("isbn, valid", [
    ("9780132350884", True),
    ("978-0-306-40615-7", True),
    ("0306406152", True),
    ("080442957X", True),
    ("9780306406158", False),
    ("0306406153", False),
    ("12345", False),
    ("", False),
    (None, False),
])
def test_isbn_validation(isbn, valid):
    assert ISBNValidator.is_valid_isbn(isbn) is valid


def test_text_validators():
    assert TextValidator.validate_title("Dune")
    assert not TextValidator.validate_title("   ")
    assert not TextValidator.validate_author("1984")
    assert TextValidator.validate_email("a@b.c")
    assert not TextValidator.validate_email("a b@c")
    assert TextValidator.is_blank(None)
    assert TextValidator.is_blank(" \t")
    assert not TextValidator.is_blank("x")


def test_validate_stock():
    validate_stock(0, 0)
    validate_stock(3, 3)
    with pytest.raises(ValueError):
        validate_stock(2, 3)
    with pytest.raises(ValueError):
        validate_stock(2, -1)


def test_fine_computation():
    due = date(2024, 3, 15)
    assert days_late(due, date(2024, 3, 15)) == 0
    assert days_late(due, date(2024, 3, 10)) == 0
    assert compute_fine(due, date(2024, 3, 18), 5000) == 15000
    assert compute_fine(due, date(2024, 4, 1), 5000) == 85000


def test_loan_overdue_only_when_approved():
    loan = Loan(1, 2, "2024-03-01", "2024-03-15", "approved")
    assert loan.is_overdue(date(2024, 3, 16))
    assert not loan.is_overdue(date(2024, 3, 15))

    loan.status = LoanStatus.PENDING
    assert not loan.is_overdue(date(2024, 4, 1))


def test_loan_transitions():
    loan = Loan(1, 2, date(2024, 3, 1), date(2024, 3, 15))
    assert loan.can_move_to(LoanStatus.APPROVED)
    assert loan.can_move_to(LoanStatus.REJECTED)
    assert not loan.can_move_to(LoanStatus.RETURNED)

    for terminal in (LoanStatus.REJECTED, LoanStatus.RETURNED):
        loan.status = terminal
        assert not any(loan.can_move_to(target) for target in LoanStatus)


def test_loan_to_dict_uses_iso_dates():
    loan = Loan.from_dict({
        "id": 7, "book_id": 1, "user_id": 2, "loan_date": "2024-03-01",
        "due_date": "2024-03-15", "status": "returned", "return_date": "2024-03-20 10:00:00",
        "fine": 25000,
    })
    data = loan.to_dict()
    assert data["return_date"] == "2024-03-20"
    assert data["status"] == "returned"
    assert data["fine"] == 25000


def test_book_defaults():
    book = Book("  Dune ", "Frank Herbert", "  ", quantity=4)
    assert book.title == "Dune"
    assert book.isbn is None
    assert book.available == 4
    assert book.on_loan == 0
    assert Book.from_dict(book.to_dict()).quantity == 4
