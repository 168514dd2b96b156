import re
from typing import Optional


class ISBNValidator:
    """ISBN-10 / ISBN-13 checks used before a book enters the catalog."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:9].isdigit() or not (s[9].isdigit() or s[9] == "X"):
                return False
            digits = [int(ch) for ch in s[:9]] + [10 if s[9] == "X" else int(s[9])]
            # weights 10..1
            return sum(w * d for w, d in zip(range(10, 0, -1), digits)) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[12])
        return False


class TextValidator:
    """Basic checks for free-text catalog and loan fields."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return bool(title and title.strip())

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        return bool(t) and not t.isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return bool(email) and re.fullmatch(r"[^@\s]+@[^@\s]+", email.strip()) is not None

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not text.strip()


def validate_stock(quantity: int, available: int) -> None:
    """Raise ValueError unless 0 <= available <= quantity."""
    if quantity < 0:
        raise ValueError("Quantity cannot be negative.")
    if available < 0 or available > quantity:
        raise ValueError(f"Available copies must be between 0 and {quantity}.")
