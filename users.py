import logging
import secrets
import sqlite3
from typing import List, Optional

from config import settings
from database import get_db_connection, initialize_database, resolve_database_file, transaction
from errors import InvalidState, NotFound, Unauthorized
from user import Role, User
from utils.validators import TextValidator

logger = logging.getLogger(__name__)


def require_role(actor: Optional[User], *roles: Role) -> User:
    """Return the actor when it holds one of ``roles``; raise Unauthorized otherwise."""
    if actor is None:
        raise Unauthorized("Authentication required.")
    if roles and actor.role not in roles:
        raise Unauthorized(
            f"{actor.role.value} may not perform this action.", authenticated=True
        )
    return actor


class Users:
    """Account store. The API token stands in for a session from the identity provider."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = resolve_database_file(db_file)
        initialize_database(self.db_file)

    def create_user(self, name: str, email: str, role: Role = Role.USER,
                    api_token: Optional[str] = None) -> User:
        if not TextValidator.validate_title(name):
            raise ValueError("Name cannot be empty.")
        if not TextValidator.validate_email(email):
            raise ValueError("Invalid email address.")
        user = User(name=name, email=email, role=role, api_token=api_token or secrets.token_hex(16))
        try:
            with transaction(self.db_file) as conn:
                cursor = conn.execute(
                    "INSERT INTO users (name, email, role, api_token) VALUES (?, ?, ?, ?)",
                    (user.name, user.email, user.role.value, user.api_token),
                )
                user.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with email {user.email} already exists.") from e
        logger.info(f"User created: id={user.id} email={user.email} role={user.role.value}")
        return self.get_user(user.id)

    def ensure_admin(self) -> User:
        """Create the bootstrap admin from settings unless it already exists."""
        existing = self.find_by_email(settings.admin_email)
        if existing:
            return existing
        return self.create_user(settings.admin_name, settings.admin_email, Role.ADMIN, api_token=settings.api_key)

    def get_user(self, user_id: int) -> User:
        user = self._find_one("id = ?", user_id)
        if not user:
            raise NotFound(f"User {user_id} not found.")
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        return self._find_one("email = ?", email.strip().lower())

    def find_by_token(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        return self._find_one("api_token = ?", token)

    def list_users(self, role: Optional[Role] = None) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            if role:
                rows = conn.execute("SELECT * FROM users WHERE role = ? ORDER BY name", (Role(role).value,))
            else:
                rows = conn.execute("SELECT * FROM users ORDER BY name")
            return [User.from_dict(dict(row)) for row in rows.fetchall()]
        finally:
            conn.close()

    def update_user(self, user_id: int, *, name: Optional[str] = None, email: Optional[str] = None,
                    role: Optional[Role] = None) -> User:
        changes = {}
        if name is not None:
            if not TextValidator.validate_title(name):
                raise ValueError("Name cannot be empty.")
            changes["name"] = name.strip()
        if email is not None:
            if not TextValidator.validate_email(email):
                raise ValueError("Invalid email address.")
            changes["email"] = email.strip().lower()
        if role is not None:
            changes["role"] = Role(role).value
        if not changes:
            raise ValueError("Nothing to update.")
        self.get_user(user_id)
        assignments = ", ".join(f"{column} = ?" for column in changes)
        try:
            with transaction(self.db_file) as conn:
                conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", [*changes.values(), user_id])
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with email {changes.get('email')} already exists.") from e
        return self.get_user(user_id)

    def delete_user(self, user_id: int) -> bool:
        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                return False
            out = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE user_id = ? AND status = 'approved'", (user_id,)
            ).fetchone()[0]
            if out:
                raise InvalidState(f"User {user_id} still has {out} books on loan.")
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info(f"User deleted: id={user_id}")
        return True

    def count(self) -> int:
        conn = get_db_connection(self.db_file)
        try:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        finally:
            conn.close()

    def _find_one(self, where: str, value) -> Optional[User]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(f"SELECT * FROM users WHERE {where}", (value,)).fetchone()
            return User.from_dict(dict(row)) if row else None
        finally:
            conn.close()
