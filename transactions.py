from __future__ import annotations

from datetime import datetime
from enum import Enum

from book import Book
from database import format_timestamp, parse_timestamp
from member import Member


class TransactionStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    # Reserved for administrative tooling; the borrow/return workflow never writes these.
    OVERDUE = "OVERDUE"
    LOST = "LOST"


BOOK_PREFIX = "book__"
MEMBER_PREFIX = "member__"


def _unprefix(data: dict, prefix: str) -> dict | None:
    nested = {key[len(prefix):]: value for key, value in data.items() if key.startswith(prefix)}
    if not nested or nested.get("id") is None:
        return None
    return nested


class Transaction:
    """A single borrow of one book copy by one member.

    ``book`` and ``member`` are filled in when the record is loaded through
    the joined query. ``is_overdue`` is derived when the record is loaded and
    is never persisted: an active loan whose due date has passed.
    """

    def __init__(self, id: str, book_id: str, member_id: str, borrow_date: datetime,
                 due_date: datetime, return_date: datetime | None = None,
                 status: TransactionStatus = TransactionStatus.BORROWED, fine_amount: float = 0.0,
                 book: Book | None = None, member: Member | None = None,
                 is_overdue: bool = False) -> None:
        self.id = id
        self.book_id = book_id
        self.member_id = member_id
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = TransactionStatus(status)
        self.fine_amount = float(fine_amount or 0)
        self.book = book
        self.member = member
        self.is_overdue = is_overdue

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.id} [{self.status.value}] book={self.book_id} member={self.member_id}"

    @property
    def is_active(self) -> bool:
        return self.status == TransactionStatus.BORROWED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "memberId": self.member_id,
            "borrowDate": format_timestamp(self.borrow_date),
            "dueDate": format_timestamp(self.due_date),
            "returnDate": format_timestamp(self.return_date) if self.return_date else None,
            "status": self.status.value,
            "fineAmount": self.fine_amount,
            "isOverdue": self.is_overdue,
            "book": self.book.to_dict() if self.book else None,
            "member": self.member.to_dict() if self.member else None,
        }

    @staticmethod
    def from_row(data: dict, now: datetime | None = None) -> "Transaction":
        book_data = _unprefix(data, BOOK_PREFIX)
        member_data = _unprefix(data, MEMBER_PREFIX)
        due_date = parse_timestamp(data["due_date"])
        status = TransactionStatus(data["status"])
        return_date = data.get("return_date")
        return Transaction(
            id=data["id"],
            book_id=data["book_id"],
            member_id=data["member_id"],
            borrow_date=parse_timestamp(data["borrow_date"]),
            due_date=due_date,
            return_date=parse_timestamp(return_date) if return_date else None,
            status=status,
            fine_amount=data.get("fine_amount", 0),
            book=Book.from_row(book_data) if book_data else None,
            member=Member.from_row(member_data) if member_data else None,
            is_overdue=bool(now and status == TransactionStatus.BORROWED and now > due_date),
        )
