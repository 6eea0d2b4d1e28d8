import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from dotenv import load_dotenv

# Load .env before reading the environment so the override below is honoured
# regardless of import order (library -> database -> config).
load_dotenv()

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) LIBRARY_DATA_FILE (the variable config.py/.env uses)
# 3) library.db in the working directory
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.environ.get("LIBRARY_DATA_FILE")
    or "library.db"
)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with foreign keys enforced."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Yield a plain connection and close it afterwards."""
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def unit_of_work(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one atomic write.

    BEGIN IMMEDIATE takes the write lock before any read, so precondition
    checks and the writes that depend on them see the same state. Any
    exception rolls everything back.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def format_timestamp(value: datetime) -> str:
    """Store timestamps as fixed-width UTC ISO strings so they sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) as an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                genre TEXT,
                description TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1 CHECK(total_copies >= 1),
                available_copies INTEGER NOT NULL DEFAULT 1,
                added_at TEXT NOT NULL,
                CHECK(available_copies >= 0 AND available_copies <= total_copies)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                phone TEXT,
                address TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                join_date TEXT NOT NULL
            )
        """)

        # Returned history goes with its book or member; active loans block deletion in library.py
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                member_id TEXT NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'BORROWED'
                    CHECK(status IN ('BORROWED', 'RETURNED', 'OVERDUE', 'LOST')),
                fine_amount REAL NOT NULL DEFAULT 0,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_added_at ON books(added_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_members_join_date ON members(join_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_book_status ON transactions(book_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_member_status ON transactions(member_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_borrow_date ON transactions(borrow_date)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables when needed."""
    create_tables(db_file)
