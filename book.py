from __future__ import annotations


BOOK_COLUMNS = (
    "id", "title", "author", "isbn", "publisher", "published_year", "category",
    "pages", "language", "description", "cover_url", "quantity", "available",
    "created_at",
)


class Book:
    """Represents a catalog entry and its stock counts."""

    def __init__(self, title: str, author: str, isbn: str | None = None, *,
                 id: int | None = None, quantity: int = 1, available: int | None = None,
                 publisher: str | None = None, published_year: int | None = None,
                 category: str | None = None, pages: int | None = None,
                 language: str | None = None, description: str | None = None,
                 cover_url: str | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip() if isbn and isbn.strip() else None
        self.quantity = quantity
        # A new book starts with every copy on the shelf.
        self.available = quantity if available is None else available
        self.publisher = publisher
        self.published_year = published_year
        self.category = category
        self.pages = pages
        self.language = language
        self.description = description
        self.cover_url = cover_url
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available}/{self.quantity} available)"

    @property
    def on_loan(self) -> int:
        return self.quantity - self.available

    def to_dict(self) -> dict:
        return {column: getattr(self, column) for column in BOOK_COLUMNS}

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            quantity=data.get("quantity", 1),
            available=data.get("available"),
            publisher=data.get("publisher"),
            published_year=data.get("published_year"),
            category=data.get("category"),
            pages=data.get("pages"),
            language=data.get("language"),
            description=data.get("description"),
            cover_url=data.get("cover_url"),
            created_at=data.get("created_at"),
        )
