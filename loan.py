from __future__ import annotations

from datetime import date
from enum import Enum


class LoanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


# Allowed moves of the loan state machine. Rejected and returned are terminal.
TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.RETURNED},
    LoanStatus.REJECTED: set(),
    LoanStatus.RETURNED: set(),
}


def _to_date(value: date | str | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    # Stored as YYYY-MM-DD; tolerate a full ISO timestamp.
    return date.fromisoformat(str(value)[:10])


def days_late(due_date: date, returned_on: date) -> int:
    """Whole days past the due date, never negative."""
    return max(0, (returned_on - due_date).days)


def compute_fine(due_date: date, returned_on: date, fine_per_day: int) -> int:
    return days_late(due_date, returned_on) * fine_per_day


class Loan:
    """A borrower's request for one copy of a book, and what became of it."""

    def __init__(self, book_id: int, user_id: int, loan_date: date | str, due_date: date | str,
                 status: LoanStatus | str = LoanStatus.PENDING, *, id: int | None = None,
                 rejection_reason: str | None = None, return_date: date | str | None = None,
                 fine: int | None = None, created_at: str | None = None,
                 updated_at: str | None = None, book_title: str | None = None,
                 book_author: str | None = None, borrower_name: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.loan_date = _to_date(loan_date)
        self.due_date = _to_date(due_date)
        self.status = LoanStatus(status)
        self.rejection_reason = rejection_reason
        self.return_date = _to_date(return_date)
        self.fine = fine
        self.created_at = created_at
        self.updated_at = updated_at
        # Display fields filled in when the loan is read joined with book and user.
        self.book_title = book_title
        self.book_author = book_author
        self.borrower_name = borrower_name

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"Loan #{self.id} book={self.book_id} user={self.user_id} [{self.status.value}]"

    def can_move_to(self, target: LoanStatus) -> bool:
        return target in TRANSITIONS[self.status]

    def is_overdue(self, today: date | None = None) -> bool:
        """Only a loan that is currently out can be overdue."""
        today = today or date.today()
        return self.status == LoanStatus.APPROVED and self.due_date < today

    def days_late(self, on: date | None = None) -> int:
        return days_late(self.due_date, on or date.today())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "loan_date": self.loan_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "status": self.status.value,
            "rejection_reason": self.rejection_reason,
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "fine": self.fine,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "book_title": self.book_title,
            "book_author": self.book_author,
            "borrower_name": self.borrower_name,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data.get("id"),
            book_id=data["book_id"],
            user_id=data["user_id"],
            loan_date=data["loan_date"],
            due_date=data["due_date"],
            status=data.get("status", LoanStatus.PENDING),
            rejection_reason=data.get("rejection_reason"),
            return_date=data.get("return_date"),
            fine=data.get("fine"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            book_title=data.get("book_title"),
            book_author=data.get("book_author"),
            borrower_name=data.get("borrower_name"),
        )
