import logging
import re
import sqlite3
import time
from typing import Any, Dict, List, Optional

import httpx

from book import BOOK_COLUMNS, Book
from config import settings
from database import get_db_connection, initialize_database, resolve_database_file, transaction
from errors import ExternalServiceError, InvalidState, NotFound, OutOfStock
from utils.validators import ISBNValidator, TextValidator, validate_stock

logger = logging.getLogger(__name__)

# Columns a caller may change through update_book().
EDITABLE_FIELDS = (
    "title", "author", "isbn", "publisher", "published_year", "category",
    "pages", "language", "description", "cover_url", "quantity",
)


class Library:
    """Catalog store: books, their stock counts, and the copy accounting used by loans."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Pin the database file so later environment changes do not move us.
        self.db_file = resolve_database_file(db_file)
        initialize_database(self.db_file)

    # ------------------------- Core operations ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a pre-constructed Book. Prevent duplicates by ISBN."""
        if not TextValidator.validate_title(book.title):
            raise ValueError("Title cannot be empty.")
        if not TextValidator.validate_author(book.author):
            raise ValueError("Author cannot be empty or numeric.")
        if book.isbn:
            book.isbn = ISBNValidator.normalize_isbn(book.isbn)
            if not ISBNValidator.is_valid_isbn(book.isbn):
                raise ValueError("Invalid ISBN format.")
            if self.find_by_isbn(book.isbn):
                raise ValueError(f"Book with ISBN {book.isbn} already exists.")
        validate_stock(book.quantity, book.available)

        columns = [c for c in BOOK_COLUMNS if c not in ("id", "created_at")]
        try:
            with transaction(self.db_file) as conn:
                cursor = conn.execute(
                    f"INSERT INTO books ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                    [getattr(book, c) for c in columns],
                )
                book.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {book.isbn} already exists.") from e
        logger.info(f"Book added: id={book.id} title={book.title!r} quantity={book.quantity}")
        return self.get_book(book.id)

    def add_book_by_isbn(self, isbn: str, quantity: int = 1) -> Book:
        """Fetch metadata from Open Library by ISBN, create and add the book."""
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not isbn:
            raise ValueError("ISBN cannot be empty.")
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValueError("Invalid ISBN format.")

        book_json = self._fetch_book_json(isbn)
        if not book_json or not book_json.get("title"):
            raise LookupError("Book not found.")

        author_names = [a["name"] for a in book_json.get("authors", []) or [] if isinstance(a, dict) and a.get("name")]
        publishers = [p["name"] for p in book_json.get("publishers", []) or [] if isinstance(p, dict) and p.get("name")]
        subjects = [s["name"] for s in book_json.get("subjects", []) or [] if isinstance(s, dict) and s.get("name")]

        year_match = re.search(r"\d{4}", str(book_json.get("publish_date", "")))
        published_year = int(year_match.group()) if year_match else None

        book = Book(
            title=book_json["title"],
            author=", ".join(author_names) if author_names else "Unknown Author",
            isbn=isbn,
            quantity=quantity,
            publisher=publishers[0] if publishers else None,
            published_year=published_year,
            category=subjects[0] if subjects else None,
            pages=book_json.get("number_of_pages"),
            cover_url=(book_json.get("cover") or {}).get("large"),
        )
        return self.add_book(book)

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if not book:
            raise NotFound(f"Book {book_id} not found.")
        return book

    def find_book(self, book_id: int) -> Optional[Book]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_books(self, search: Optional[str] = None, category: Optional[str] = None) -> List[Book]:
        """List books, optionally filtered by a title/author/ISBN search and a category."""
        sql = "SELECT * FROM books WHERE 1 = 1"
        params: List[Any] = []
        if search:
            sql += " AND (title LIKE ? OR author LIKE ? OR isbn LIKE ?)"
            params += [f"%{search}%"] * 3
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY title COLLATE NOCASE"
        conn = get_db_connection(self.db_file)
        try:
            return [Book.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def list_categories(self) -> List[str]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT DISTINCT category FROM books WHERE category IS NOT NULL AND category != '' ORDER BY category"
            ).fetchall()
            return [row[0] for row in rows]
        finally:
            conn.close()

    def update_book(self, book_id: int, **fields: Any) -> Book:
        """Partially update a book. Changing quantity shifts available by the same amount."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in fields.items() if v is not None}
        if not changes:
            raise ValueError("Nothing to update.")
        if "title" in changes and not TextValidator.validate_title(changes["title"]):
            raise ValueError("Title cannot be empty.")
        if "author" in changes and not TextValidator.validate_author(changes["author"]):
            raise ValueError("Author cannot be empty or numeric.")
        if "isbn" in changes:
            changes["isbn"] = ISBNValidator.normalize_isbn(changes["isbn"])
            if not ISBNValidator.is_valid_isbn(changes["isbn"]):
                raise ValueError("Invalid ISBN format.")

        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT quantity, available FROM books WHERE id = ?", (book_id,)).fetchone()
            if not row:
                raise NotFound(f"Book {book_id} not found.")
            if "quantity" in changes:
                if changes["quantity"] < 0:
                    raise ValueError("Quantity cannot be negative.")
                on_loan = row["quantity"] - row["available"]
                if changes["quantity"] < on_loan:
                    raise InvalidState(
                        f"Cannot reduce quantity to {changes['quantity']}: {on_loan} copies are on loan."
                    )
                changes["available"] = changes["quantity"] - on_loan
            assignments = ", ".join(f"{column} = ?" for column in changes)
            try:
                conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", [*changes.values(), book_id])
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Book with ISBN {changes.get('isbn')} already exists.") from e
        logger.info(f"Book updated: id={book_id} fields={sorted(changes)}")
        return self.get_book(book_id)

    def remove_book(self, book_id: int) -> bool:
        """Delete a book with its closed or pending loans and wishlist entries."""
        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                return False
            out = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND status = 'approved'", (book_id,)
            ).fetchone()[0]
            if out:
                raise InvalidState(f"Book {book_id} has {out} copies on loan.")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Book removed: id={book_id}")
        return True

    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(quantity), 0), COALESCE(SUM(available), 0), "
                "COUNT(DISTINCT author) FROM books"
            ).fetchone()
            return {
                "total_books": row[0],
                "total_copies": row[1],
                "available_copies": row[2],
                "unique_authors": row[3],
            }
        finally:
            conn.close()

    # ------------------------- Copy accounting ------------------------- #
    # Both run inside the caller's transaction, so the stock change commits or
    # rolls back together with the loan status change.
    def checkout_copy(self, conn: sqlite3.Connection, book_id: int) -> int:
        """Take one copy off the shelf. Returns the new available count."""
        cursor = conn.execute(
            "UPDATE books SET available = available - 1 WHERE id = ? AND available > 0", (book_id,)
        )
        if cursor.rowcount == 0:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFound(f"Book {book_id} not found.")
            raise OutOfStock(f"No copies of book {book_id} are available.")
        return conn.execute("SELECT available FROM books WHERE id = ?", (book_id,)).fetchone()[0]

    def checkin_copy(self, conn: sqlite3.Connection, book_id: int) -> int:
        """Put one copy back on the shelf. Returns the new available count."""
        cursor = conn.execute(
            "UPDATE books SET available = available + 1 WHERE id = ? AND available < quantity", (book_id,)
        )
        if cursor.rowcount == 0:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFound(f"Book {book_id} not found.")
            raise InvalidState(f"All copies of book {book_id} are already on the shelf.")
        return conn.execute("SELECT available FROM books WHERE id = ?", (book_id,)).fetchone()[0]

    # ------------------------- External API helpers ------------------------- #
    def _fetch_book_json(self, isbn: str) -> Optional[dict]:
        url = f"https://openlibrary.org/api/books?bibkeys=ISBN:{isbn}&format=json&jscmd=data"
        resp = self._http_get_with_retry(url, timeout=settings.openlibrary_timeout)
        if resp is None:
            logger.error(f"Open Library unreachable for ISBN {isbn}")
            raise ExternalServiceError("Open Library unreachable")
        if resp.status_code == 200:
            return resp.json().get(f"ISBN:{isbn}")
        return None

    def _http_get_with_retry(self, url: str, timeout: float, retries: int = 3, backoff: float = 0.5) -> Optional[httpx.Response]:
        """Retry wrapper for httpx.get to ride out transient network issues."""
        for attempt in range(retries):
            try:
                return httpx.get(url, timeout=timeout)
            except httpx.RequestError as exc:
                logger.warning(f"GET {url} failed (attempt {attempt + 1}/{retries}): {exc}")
                if attempt < retries - 1:
                    time.sleep(backoff * (2 ** attempt))
        return None

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
