"""Loan ledger: the request → approve/reject → return workflow.

Every write runs inside ``database.transaction()`` so the loan status change
and the matching stock change on the book commit together or not at all:

    pending --approve--> approved --return--> returned
    pending --reject---> rejected

Approval is the authoritative availability gate. A request only reads the
current count, so several pending requests may exist for the last copy; the
first approval wins and the others fail with ``OutOfStock``.
"""

from __future__ import annotations

import inspect
import logging
import sqlite3
from datetime import date, timedelta
from functools import wraps
from typing import Any, Dict, List, Optional

from config import settings
from database import get_db_connection, transaction
from errors import InvalidDate, InvalidState, LibraryError, MissingReason, NotFound, OutOfStock
from library import Library
from loan import Loan, LoanStatus, compute_fine
from user import Role, User
from users import require_role
from utils.validators import TextValidator
from wishlist import Wishlist

logger = logging.getLogger(__name__)

_LOAN_SELECT = (
    "SELECT l.*, b.title AS book_title, b.author AS book_author, u.name AS borrower_name "
    "FROM loans l JOIN books b ON b.id = l.book_id JOIN users u ON u.id = l.user_id"
)


def _audited(action: str, target: str = "loan_id"):
    """Log refused ledger actions before handing the error back to the caller."""
    def decorator(func):
        signature = inspect.signature(func)

        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except LibraryError as e:
                # Bound by name so actor and target may be passed by position or keyword.
                arguments = signature.bind_partial(self, *args, **kwargs).arguments
                actor = arguments.get("actor")
                who = actor.id if actor else None
                target_id = arguments.get(target)
                logger.warning(f"{action} refused: {target}={target_id} actor={who} {e.code}: {e}")
                raise
        return wrapper
    return decorator


class LoanLedger:
    def __init__(self, library: Library, wishlist: Optional[Wishlist] = None,
                 loan_period_days: Optional[int] = None, fine_per_day: Optional[int] = None) -> None:
        self.library = library
        self.db_file = library.db_file
        self.wishlist = wishlist or Wishlist(self.db_file)
        self.loan_period_days = settings.loan_period_days if loan_period_days is None else loan_period_days
        self.fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day

    # ------------------------- Transitions ------------------------- #
    @_audited("request", target="book_id")
    def request(self, actor: Optional[User], book_id: int, loan_date: Optional[date] = None,
                due_date: Optional[date] = None, remove_from_wishlist: bool = False) -> Loan:
        """Create a pending loan for ``actor``. The book's stock is untouched until approval."""
        borrower = require_role(actor, Role.USER, Role.ADMIN)
        loan_date = loan_date or date.today()
        due_date = due_date or loan_date + timedelta(days=self.loan_period_days)

        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT available FROM books WHERE id = ?", (book_id,)).fetchone()
            if not row:
                raise NotFound(f"Book {book_id} not found.")
            if due_date < loan_date:
                raise InvalidDate("Due date cannot be before the loan date.")
            if row["available"] == 0:
                raise OutOfStock(f"No copies of book {book_id} are available.")
            cursor = conn.execute(
                "INSERT INTO loans (book_id, user_id, loan_date, due_date, status) VALUES (?, ?, ?, ?, ?)",
                (book_id, borrower.id, loan_date.isoformat(), due_date.isoformat(), LoanStatus.PENDING.value),
            )
            loan_id = cursor.lastrowid
            if remove_from_wishlist:
                self.wishlist.remove(borrower.id, book_id, conn=conn)

        logger.info(f"Loan requested: loan={loan_id} book={book_id} user={borrower.id} due={due_date}")
        return self.get(loan_id)

    @_audited("approve")
    def approve(self, actor: Optional[User], loan_id: int) -> Loan:
        """Approve a pending loan and take one copy off the shelf."""
        require_role(actor, Role.ADMIN)
        with transaction(self.db_file) as conn:
            loan = self._load_for_update(conn, loan_id, LoanStatus.APPROVED)
            available = self.library.checkout_copy(conn, loan.book_id)
            self._set_status(conn, loan, LoanStatus.APPROVED)

        logger.info(f"Loan approved: loan={loan_id} book={loan.book_id} available={available}")
        return self.get(loan_id)

    @_audited("reject")
    def reject(self, actor: Optional[User], loan_id: int, reason: Optional[str]) -> Loan:
        require_role(actor, Role.ADMIN)
        with transaction(self.db_file) as conn:
            loan = self._load_for_update(conn, loan_id, LoanStatus.REJECTED)
            if TextValidator.is_blank(reason):
                raise MissingReason("A rejection reason is required.")
            self._set_status(conn, loan, LoanStatus.REJECTED, rejection_reason=reason.strip())

        logger.info(f"Loan rejected: loan={loan_id} book={loan.book_id}")
        return self.get(loan_id)

    @_audited("return")
    def return_loan(self, actor: Optional[User], loan_id: int, return_date: Optional[date] = None,
                    fine_override: Optional[int] = None) -> Loan:
        """Close an approved loan, charge the overdue fine and put the copy back.

        ``fine_override`` replaces the computed fine verbatim (manual adjustment
        at the desk); otherwise the fine is days late times the daily rate.
        """
        require_role(actor, Role.ADMIN)
        if fine_override is not None and (
            isinstance(fine_override, bool) or not isinstance(fine_override, int) or fine_override < 0
        ):
            raise ValueError("Fine must be a non-negative integer.")
        return_date = return_date or date.today()

        with transaction(self.db_file) as conn:
            loan = self._load_for_update(conn, loan_id, LoanStatus.RETURNED)
            if return_date < loan.loan_date:
                raise InvalidDate(
                    f"Return date {return_date} is before the loan date {loan.loan_date}."
                )
            computed = compute_fine(loan.due_date, return_date, self.fine_per_day)
            fine = computed if fine_override is None else fine_override
            available = self.library.checkin_copy(conn, loan.book_id)
            self._set_status(conn, loan, LoanStatus.RETURNED, return_date=return_date.isoformat(), fine=fine)

        if fine != computed:
            logger.info(f"Fine overridden: loan={loan_id} computed={computed} charged={fine}")
        logger.info(f"Loan returned: loan={loan_id} book={loan.book_id} fine={fine} available={available}")
        return self.get(loan_id)

    def update_status(self, actor: Optional[User], loan_id: int, status: LoanStatus | str,
                      rejection_reason: Optional[str] = None, return_date: Optional[date] = None,
                      fine: Optional[int] = None) -> Loan:
        """Apply a transition named by its target status."""
        try:
            target = LoanStatus(status)
        except ValueError as e:
            raise InvalidState(f"Unknown loan status: {status}") from e
        if target == LoanStatus.APPROVED:
            return self.approve(actor, loan_id)
        if target == LoanStatus.REJECTED:
            return self.reject(actor, loan_id, rejection_reason)
        if target == LoanStatus.RETURNED:
            return self.return_loan(actor, loan_id, return_date=return_date, fine_override=fine)
        raise InvalidState(f"Loans cannot be moved back to {target.value}.")

    # ------------------------- Queries ------------------------- #
    def get(self, loan_id: int) -> Loan:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(f"{_LOAN_SELECT} WHERE l.id = ?", (loan_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFound(f"Loan {loan_id} not found.")
        return Loan.from_dict(dict(row))

    def list_loans(self, status: Optional[LoanStatus | str] = None, user_id: Optional[int] = None,
                   search: Optional[str] = None) -> List[Loan]:
        """Newest first, filtered by status, borrower and a title/author/borrower search."""
        sql = f"{_LOAN_SELECT} WHERE 1 = 1"
        params: List[Any] = []
        if status:
            sql += " AND l.status = ?"
            params.append(LoanStatus(status).value)
        if user_id is not None:
            sql += " AND l.user_id = ?"
            params.append(user_id)
        if search:
            sql += " AND (b.title LIKE ? OR b.author LIKE ? OR u.name LIKE ?)"
            params += [f"%{search}%"] * 3
        sql += " ORDER BY l.created_at DESC, l.id DESC"
        conn = get_db_connection(self.db_file)
        try:
            return [Loan.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def list_overdue(self, today: Optional[date] = None) -> List[Loan]:
        today = today or date.today()
        return [loan for loan in self.list_loans(status=LoanStatus.APPROVED) if loan.is_overdue(today)]

    def preview_fine(self, loan_id: int, return_date: Optional[date] = None) -> int:
        """The fine return_loan() would charge for an approved loan returned on ``return_date``."""
        return self.fine_for(self.get(loan_id), return_date)

    def fine_for(self, loan: Loan, return_date: Optional[date] = None) -> int:
        if loan.status != LoanStatus.APPROVED:
            raise InvalidState(f"Loan {loan.id} is {loan.status.value}, not out on loan.")
        return compute_fine(loan.due_date, return_date or date.today(), self.fine_per_day)

    def count_by_status(self) -> Dict[str, int]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute("SELECT status, COUNT(*) FROM loans GROUP BY status").fetchall()
        finally:
            conn.close()
        counts = {status.value: 0 for status in LoanStatus}
        counts.update({row[0]: row[1] for row in rows})
        return counts

    def borrower_stats(self, user_id: int) -> Dict[str, int]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT COUNT(*), "
                "COALESCE(SUM(CASE WHEN status = 'approved' THEN 1 ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN status = 'returned' THEN fine ELSE 0 END), 0) "
                "FROM loans WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        return {
            "active_loans": row[1],
            "total_loans": row[0],
            "wishlist_count": self.wishlist.count(user_id),
            "total_fines": row[2],
        }

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _load_for_update(conn: sqlite3.Connection, loan_id: int, target: LoanStatus) -> Loan:
        row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if not row:
            raise NotFound(f"Loan {loan_id} not found.")
        loan = Loan.from_dict(dict(row))
        if not loan.can_move_to(target):
            raise InvalidState(f"Loan {loan_id} is {loan.status.value}; cannot move to {target.value}.")
        return loan

    @staticmethod
    def _set_status(conn: sqlite3.Connection, loan: Loan, target: LoanStatus, **fields: Any) -> None:
        assignments = "".join(f", {column} = ?" for column in fields)
        cursor = conn.execute(
            f"UPDATE loans SET status = ?, updated_at = CURRENT_TIMESTAMP{assignments} "
            "WHERE id = ? AND status = ?",
            [target.value, *fields.values(), loan.id, loan.status.value],
        )
        if cursor.rowcount != 1:
            raise InvalidState(f"Loan {loan.id} changed while being updated.")
        loan.status = target
