from __future__ import annotations

from datetime import datetime

from database import format_timestamp, parse_timestamp


class Book:
    """Represents a single title in the library together with its copy counts."""

    def __init__(self, id: str, title: str, author: str, total_copies: int = 1,
                 available_copies: int | None = None, isbn: str | None = None,
                 genre: str | None = None, description: str | None = None,
                 added_at: datetime | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn
        self.genre = genre
        self.description = description
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.added_at = added_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "addedAt": format_timestamp(self.added_at) if self.added_at else None,
        }

    @staticmethod
    def from_row(data: dict) -> "Book":
        added_at = data.get("added_at")
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            genre=data.get("genre"),
            description=data.get("description"),
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            added_at=parse_timestamp(added_at) if added_at else None,
        )
