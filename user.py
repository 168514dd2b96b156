from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class User:
    """An account that can borrow books; admins also run the loan desk."""

    def __init__(self, name: str, email: str, role: Role | str = Role.USER, *,
                 id: int | None = None, api_token: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role)
        self.api_token = api_token
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} <{self.email}> ({self.role.value})"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def to_dict(self, include_token: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at,
        }
        if include_token:
            data["api_token"] = self.api_token
        return data

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            role=data.get("role", Role.USER),
            api_token=data.get("api_token"),
            created_at=data.get("created_at"),
        )
