import logging
import math
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import database
from book import Book
from config import settings
from database import format_timestamp, parse_timestamp
from member import Member
from transactions import BOOK_PREFIX, MEMBER_PREFIX, Transaction, TransactionStatus
from utils.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = ("id", "title", "author", "isbn", "genre", "description",
                 "total_copies", "available_copies", "added_at")
_MEMBER_COLUMNS = ("id", "name", "email", "phone", "address", "is_active", "join_date")

_TRANSACTION_SELECT = (
    "SELECT t.id, t.book_id, t.member_id, t.borrow_date, t.due_date, t.return_date, "
    "t.status, t.fine_amount, "
    + ", ".join(f"b.{col} AS {BOOK_PREFIX}{col}" for col in _BOOK_COLUMNS) + ", "
    + ", ".join(f"m.{col} AS {MEMBER_PREFIX}{col}" for col in _MEMBER_COLUMNS)
    + " FROM transactions t"
    " JOIN books b ON b.id = t.book_id"
    " JOIN members m ON m.id = t.member_id"
)


def calculate_fine(due_date: datetime, returned_at: datetime, fine_per_day: float) -> float:
    """Charge ``fine_per_day`` for every started day past ``due_date``.

    Returning on or before the due date costs nothing; 36 hours late counts
    as two days.
    """
    if returned_at <= due_date:
        return 0.0
    overdue_days = math.ceil((returned_at - due_date) / timedelta(days=1))
    return round(overdue_days * fine_per_day, 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _like_pattern(text: str) -> str:
    """Substring pattern for ``LIKE ? ESCAPE '\\'`` with wildcards in ``text`` taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Library:
    """Manages books, members and the borrow/return workflow on top of SQLite."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None,
                 fine_per_day: Optional[float] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self._clock = clock or _utcnow
        self.fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
        database.initialize_database(self.db_file)

    # ------------------------- Store helpers ------------------------- #
    def _now(self) -> datetime:
        return parse_timestamp(self._clock())

    @contextmanager
    def _store(self, atomic: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection (or an atomic unit of work) and surface driver errors as StoreFailure."""
        factory = database.unit_of_work if atomic else database.connection
        try:
            with factory(self.db_file) as conn:
                yield conn
        except sqlite3.Error as exc:
            logger.exception("Database operation failed")
            raise StoreFailure("Internal server error") from exc

    @staticmethod
    def _count_active(conn: sqlite3.Connection, column: str, value: str) -> int:
        cursor = conn.execute(
            f"SELECT COUNT(*) FROM transactions WHERE {column} = ? AND status = ?",
            (value, TransactionStatus.BORROWED.value),
        )
        return cursor.fetchone()[0]

    # ------------------------- Books ------------------------- #
    def add_book(self, title: Optional[str], author: Optional[str], isbn: Optional[str] = None,
                 genre: Optional[str] = None, description: Optional[str] = None,
                 total_copies: Optional[int] = None, available_copies: Optional[int] = None) -> Book:
        """Add a title. ``total_copies`` defaults to 1 and ``available_copies`` to ``total_copies``."""
        title = TextValidator.clean(title)
        author = TextValidator.clean(author)
        if not title or not author:
            raise ValidationError("Title and author are required")

        total = 1 if total_copies is None else int(total_copies)
        if total < 1:
            raise ValidationError("totalCopies must be at least 1")
        available = total if available_copies is None else int(available_copies)
        if available < 0 or available > total:
            raise ValidationError("availableCopies must be between 0 and totalCopies")

        book = Book(
            id=_new_id(),
            title=title,
            author=author,
            isbn=ISBNValidator.normalize_isbn(isbn),
            genre=TextValidator.clean(genre),
            description=TextValidator.clean(description),
            total_copies=total,
            available_copies=available,
            added_at=self._now(),
        )
        with self._store(atomic=True) as conn:
            conn.execute(
                """
                INSERT INTO books (id, title, author, isbn, genre, description,
                                   total_copies, available_copies, added_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (book.id, book.title, book.author, book.isbn, book.genre, book.description,
                 book.total_copies, book.available_copies, format_timestamp(book.added_at)),
            )
        logger.info("Added book %s (%s)", book.id, book.title)
        return book

    def list_books(self, query: Optional[str] = None) -> List[Book]:
        """All books, newest first; ``query`` filters on title or author."""
        sql = f"SELECT {', '.join(_BOOK_COLUMNS)} FROM books"
        params: List[Any] = []
        query = TextValidator.clean(query)
        if query:
            sql += " WHERE title LIKE ? ESCAPE '\\' OR author LIKE ? ESCAPE '\\'"
            params += [_like_pattern(query)] * 2
        sql += " ORDER BY added_at DESC, rowid DESC"
        with self._store() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Book.from_row(dict(row)) for row in rows]

    def find_book(self, book_id: str) -> Optional[Book]:
        with self._store() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_BOOK_COLUMNS)} FROM books WHERE id = ?", (book_id,)
            ).fetchone()
        return Book.from_row(dict(row)) if row else None

    def remove_book(self, book_id: str) -> Book:
        """Delete a book unless a copy is still out on loan."""
        with self._store(atomic=True) as conn:
            row = conn.execute(
                f"SELECT {', '.join(_BOOK_COLUMNS)} FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if not row:
                raise NotFoundError("Book not found")
            if self._count_active(conn, "book_id", book_id):
                raise BusinessRuleViolation("Cannot delete book with active transactions")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info("Deleted book %s", book_id)
        return Book.from_row(dict(row))

    # ------------------------- Members ------------------------- #
    def add_member(self, name: Optional[str], email: Optional[str], phone: Optional[str] = None,
                   address: Optional[str] = None, is_active: Optional[bool] = None) -> Member:
        name = TextValidator.clean(name)
        email = TextValidator.clean(email)
        if not name or not email:
            raise ValidationError("Name and email are required")

        member = Member(
            id=_new_id(),
            name=name,
            email=email,
            phone=TextValidator.clean(phone),
            address=TextValidator.clean(address),
            is_active=True if is_active is None else is_active,
            join_date=self._now(),
        )
        with self._store(atomic=True) as conn:
            existing = conn.execute("SELECT id FROM members WHERE email = ?", (email,)).fetchone()
            if existing:
                raise BusinessRuleViolation("Member with this email already exists")
            try:
                conn.execute(
                    """
                    INSERT INTO members (id, name, email, phone, address, is_active, join_date)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (member.id, member.name, member.email, member.phone, member.address,
                     int(member.is_active), format_timestamp(member.join_date)),
                )
            except sqlite3.IntegrityError as e:
                raise BusinessRuleViolation("Member with this email already exists") from e
        logger.info("Added member %s (%s)", member.id, member.email)
        return member

    def list_members(self, query: Optional[str] = None) -> List[Member]:
        """All members, most recently joined first; ``query`` filters on name or email."""
        sql = f"SELECT {', '.join(_MEMBER_COLUMNS)} FROM members"
        params: List[Any] = []
        query = TextValidator.clean(query)
        if query:
            sql += " WHERE name LIKE ? ESCAPE '\\' OR email LIKE ? ESCAPE '\\'"
            params += [_like_pattern(query)] * 2
        sql += " ORDER BY join_date DESC, rowid DESC"
        with self._store() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Member.from_row(dict(row)) for row in rows]

    def find_member(self, member_id: str) -> Optional[Member]:
        with self._store() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_MEMBER_COLUMNS)} FROM members WHERE id = ?", (member_id,)
            ).fetchone()
        return Member.from_row(dict(row)) if row else None

    def set_member_active(self, member_id: str, is_active: bool) -> Member:
        """Administrative switch for a membership; inactive members cannot borrow."""
        with self._store(atomic=True) as conn:
            cursor = conn.execute(
                "UPDATE members SET is_active = ? WHERE id = ?", (int(bool(is_active)), member_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Member not found")
        logger.info("Member %s is now %s", member_id, "active" if is_active else "inactive")
        return self.find_member(member_id)

    def remove_member(self, member_id: str) -> Member:
        """Delete a member unless they still hold a borrowed book."""
        with self._store(atomic=True) as conn:
            row = conn.execute(
                f"SELECT {', '.join(_MEMBER_COLUMNS)} FROM members WHERE id = ?", (member_id,)
            ).fetchone()
            if not row:
                raise NotFoundError("Member not found")
            if self._count_active(conn, "member_id", member_id):
                raise BusinessRuleViolation("Cannot delete member with active transactions")
            conn.execute("DELETE FROM members WHERE id = ?", (member_id,))
        logger.info("Deleted member %s", member_id)
        return Member.from_row(dict(row))

    # ------------------------- Transactions ------------------------- #
    def list_transactions(self, query: Optional[str] = None, status: Optional[str] = None,
                          overdue: Optional[bool] = None) -> List[Transaction]:
        """Joined transactions, most recent borrow first.

        ``query`` matches book title or member name, ``status`` one of the
        TransactionStatus values, and ``overdue`` selects active loans that
        are (or are not) past their due date.
        """
        now = self._now()
        clauses: List[str] = []
        params: List[Any] = []

        query = TextValidator.clean(query)
        if query:
            clauses.append("(b.title LIKE ? ESCAPE '\\' OR m.name LIKE ? ESCAPE '\\')")
            params += [_like_pattern(query)] * 2
        if status:
            try:
                status_value = TransactionStatus(status.upper()).value
            except ValueError as e:
                raise ValidationError(f"Unknown status: {status}") from e
            clauses.append("t.status = ?")
            params.append(status_value)
        if overdue is not None:
            if overdue:
                clauses.append("(t.status = ? AND t.due_date < ?)")
            else:
                clauses.append("NOT (t.status = ? AND t.due_date < ?)")
            params += [TransactionStatus.BORROWED.value, format_timestamp(now)]

        sql = _TRANSACTION_SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY t.borrow_date DESC, t.rowid DESC"

        with self._store() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Transaction.from_row(dict(row), now) for row in rows]

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._store() as conn:
            row = conn.execute(_TRANSACTION_SELECT + " WHERE t.id = ?", (transaction_id,)).fetchone()
        return Transaction.from_row(dict(row), self._now()) if row else None

    def borrow(self, book_id: Optional[str], member_id: Optional[str], due_date: Any) -> Transaction:
        """Lend one copy of a book to a member.

        Checks run in order (book exists, copy available, member exists,
        member active) before anything is written. The new transaction and
        the decrement of ``available_copies`` commit together or not at all.
        """
        if not book_id or not member_id or not due_date:
            raise ValidationError("Book, member, and due date are required")
        try:
            due = parse_timestamp(due_date)
        except (TypeError, ValueError) as e:
            raise ValidationError("dueDate must be an ISO-8601 date") from e

        now = self._now()
        transaction_id = _new_id()
        with self._store(atomic=True) as conn:
            book = conn.execute(
                "SELECT available_copies FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if not book:
                raise NotFoundError("Book not found")
            if book["available_copies"] <= 0:
                raise BusinessRuleViolation("Book is not available")

            member = conn.execute("SELECT is_active FROM members WHERE id = ?", (member_id,)).fetchone()
            if not member:
                raise NotFoundError("Member not found")
            if not member["is_active"]:
                raise BusinessRuleViolation("Member is not active")

            conn.execute(
                """
                INSERT INTO transactions (id, book_id, member_id, borrow_date, due_date, status, fine_amount)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (transaction_id, book_id, member_id, format_timestamp(now), format_timestamp(due),
                 TransactionStatus.BORROWED.value),
            )
            # compare-and-set: never decrement past zero
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1 "
                "WHERE id = ? AND available_copies > 0",
                (book_id,),
            )
            if cursor.rowcount != 1:
                raise BusinessRuleViolation("Book is not available")

        logger.info("Member %s borrowed book %s (transaction %s, due %s)",
                    member_id, book_id, transaction_id, format_timestamp(due))
        return self.find_transaction(transaction_id)

    def return_book(self, transaction_id: str) -> Transaction:
        """Close an active loan, charge any overdue fine and put the copy back."""
        now = self._now()
        with self._store(atomic=True) as conn:
            row = conn.execute(
                "SELECT book_id, due_date, status FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            if not row:
                raise NotFoundError("Transaction not found")
            if row["status"] != TransactionStatus.BORROWED.value:
                raise BusinessRuleViolation("Book is already returned or not borrowed")

            fine = calculate_fine(parse_timestamp(row["due_date"]), now, self.fine_per_day)
            cursor = conn.execute(
                "UPDATE transactions SET return_date = ?, status = ?, fine_amount = ? "
                "WHERE id = ? AND status = ?",
                (format_timestamp(now), TransactionStatus.RETURNED.value, fine,
                 transaction_id, TransactionStatus.BORROWED.value),
            )
            if cursor.rowcount != 1:
                raise BusinessRuleViolation("Book is already returned or not borrowed")
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies + 1 "
                "WHERE id = ? AND available_copies < total_copies",
                (row["book_id"],),
            )
            if cursor.rowcount != 1:
                logger.error("Book %s already has every copy on the shelf; return of %s rolled back",
                             row["book_id"], transaction_id)
                raise StoreFailure("Internal server error")

        logger.info("Transaction %s returned (fine %.2f)", transaction_id, fine)
        return self.find_transaction(transaction_id)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self) -> Dict[str, int]:
        """Dashboard counters."""
        now = format_timestamp(self._now())
        borrowed = TransactionStatus.BORROWED.value
        with self._store() as conn:
            cursor = conn.cursor()
            total_books = cursor.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            total_members = cursor.execute("SELECT COUNT(*) FROM members").fetchone()[0]
            active = cursor.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = ?", (borrowed,)
            ).fetchone()[0]
            overdue = cursor.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = ? AND due_date < ?", (borrowed, now)
            ).fetchone()[0]
        return {
            "total_books": total_books,
            "total_members": total_members,
            "active_transactions": active,
            "overdue_transactions": overdue,
        }

    def close(self) -> None:
        """Connections are opened per call, so there is nothing to release."""
        return None


class LibraryError(Exception):
    """Base class for errors reported to API and CLI callers."""


class ValidationError(LibraryError, ValueError):
    """A required field is missing or malformed."""


class BusinessRuleViolation(LibraryError, ValueError):
    """The request is well formed but a circulation rule forbids it."""


class NotFoundError(LibraryError, LookupError):
    pass


class StoreFailure(LibraryError):
    pass
