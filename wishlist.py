import logging
import sqlite3
from typing import List, Optional

from book import Book
from database import get_db_connection, initialize_database, resolve_database_file, transaction
from errors import NotFound

logger = logging.getLogger(__name__)


class Wishlist:
    """Books a borrower has saved for later. Independent of loan state."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = resolve_database_file(db_file)
        initialize_database(self.db_file)

    def add(self, user_id: int, book_id: int) -> bool:
        """Save a book. Returns False if it was already on the list."""
        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFound(f"Book {book_id} not found.")
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise NotFound(f"User {user_id} not found.")
            cursor = conn.execute(
                "INSERT OR IGNORE INTO wishlist (user_id, book_id) VALUES (?, ?)", (user_id, book_id)
            )
            added = cursor.rowcount > 0
        if added:
            logger.info(f"Wishlist add: user={user_id} book={book_id}")
        return added

    def remove(self, user_id: int, book_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Drop a book from the list; pass ``conn`` to join an open transaction."""
        if conn is not None:
            return self._delete(conn, user_id, book_id)
        with transaction(self.db_file) as own_conn:
            return self._delete(own_conn, user_id, book_id)

    def contains(self, user_id: int, book_id: int) -> bool:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT 1 FROM wishlist WHERE user_id = ? AND book_id = ?", (user_id, book_id)
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def list_for(self, user_id: int) -> List[Book]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT b.* FROM wishlist w JOIN books b ON b.id = w.book_id "
                "WHERE w.user_id = ? ORDER BY w.created_at DESC, b.title",
                (user_id,),
            ).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def count(self, user_id: int) -> int:
        conn = get_db_connection(self.db_file)
        try:
            return conn.execute("SELECT COUNT(*) FROM wishlist WHERE user_id = ?", (user_id,)).fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def _delete(conn: sqlite3.Connection, user_id: int, book_id: int) -> bool:
        cursor = conn.execute("DELETE FROM wishlist WHERE user_id = ? AND book_id = ?", (user_id, book_id))
        return cursor.rowcount > 0
