import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

import database
from library import (
    BusinessRuleViolation,
    Library,
    NotFoundError,
    StoreFailure,
    ValidationError,
    calculate_fine,
)
from transactions import TransactionStatus


@pytest.fixture
def book(lib):
    return lib.add_book("The Hobbit", "J.R.R. Tolkien", total_copies=1, available_copies=1)


@pytest.fixture
def member(lib):
    return lib.add_member("Bilbo Baggins", "bilbo@example.com")


def _transaction_count(lib):
    with database.connection(lib.db_file) as conn:
        return conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]


def test_borrow_creates_joined_transaction(lib, clock, book, member):
    due = clock.now + timedelta(days=14)

    tx = lib.borrow(book.id, member.id, due)

    assert tx.status == TransactionStatus.BORROWED
    assert tx.fine_amount == 0
    assert tx.borrow_date == clock.now
    assert tx.due_date == due
    assert tx.return_date is None
    assert tx.book.id == book.id
    assert tx.member.id == member.id
    assert tx.book.available_copies == 0
    assert lib.find_book(book.id).available_copies == 0


def test_borrow_accepts_iso_strings(lib, book, member):
    tx = lib.borrow(book.id, member.id, "2024-03-15T00:00:00Z")
    assert tx.due_date == datetime(2024, 3, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("field", ["book_id", "member_id", "due_date"])
def test_borrow_requires_all_inputs(lib, book, member, field):
    args = {"book_id": book.id, "member_id": member.id, "due_date": "2024-03-15"}
    args[field] = None

    with pytest.raises(ValidationError, match="Book, member, and due date are required"):
        lib.borrow(**args)
    assert _transaction_count(lib) == 0


def test_borrow_rejects_unparsable_due_date(lib, book, member):
    with pytest.raises(ValidationError):
        lib.borrow(book.id, member.id, "next tuesday")


def test_borrow_unknown_book(lib, member):
    with pytest.raises(NotFoundError, match="Book not found"):
        lib.borrow("missing", member.id, "2024-03-15")


def test_borrow_unknown_member(lib, book):
    with pytest.raises(NotFoundError, match="Member not found"):
        lib.borrow(book.id, "missing", "2024-03-15")
    assert lib.find_book(book.id).available_copies == 1


def test_borrow_inactive_member(lib, book, member):
    lib.set_member_active(member.id, False)

    with pytest.raises(BusinessRuleViolation, match="Member is not active"):
        lib.borrow(book.id, member.id, "2024-03-15")

    assert lib.find_book(book.id).available_copies == 1
    assert _transaction_count(lib) == 0


def test_availability_checked_before_member(lib, book, member):
    lib.borrow(book.id, member.id, "2024-03-15")

    # book is out, so the unknown member is never looked at
    with pytest.raises(BusinessRuleViolation, match="Book is not available"):
        lib.borrow(book.id, "missing", "2024-03-15")


def test_borrow_unavailable_creates_nothing(lib, member):
    book = lib.add_book("Empty Shelf", "Nobody", total_copies=2, available_copies=0)

    with pytest.raises(BusinessRuleViolation, match="Book is not available"):
        lib.borrow(book.id, member.id, "2024-03-15")

    assert _transaction_count(lib) == 0
    assert lib.find_book(book.id).available_copies == 0


def test_borrow_then_return_restores_availability(lib, member):
    book = lib.add_book("Copies", "Author", total_copies=3)
    before = lib.find_book(book.id).available_copies

    tx = lib.borrow(book.id, member.id, "2024-03-15")
    assert lib.find_book(book.id).available_copies == before - 1

    lib.return_book(tx.id)
    assert lib.find_book(book.id).available_copies == before


def test_available_copies_stay_within_bounds(lib, member):
    book = lib.add_book("Popular", "Author", total_copies=2)
    other = lib.add_member("Other", "other@example.com")
    loans = [lib.borrow(book.id, m.id, "2024-03-15") for m in (member, other)]

    with pytest.raises(BusinessRuleViolation):
        lib.borrow(book.id, member.id, "2024-03-15")

    for tx in loans:
        lib.return_book(tx.id)
        current = lib.find_book(book.id)
        assert 0 <= current.available_copies <= current.total_copies
    assert lib.find_book(book.id).available_copies == 2


def test_return_sets_fields(lib, clock, book, member):
    tx = lib.borrow(book.id, member.id, clock.now + timedelta(days=7))
    clock.advance(days=3)

    returned = lib.return_book(tx.id)

    assert returned.status == TransactionStatus.RETURNED
    assert returned.return_date == clock.now
    assert returned.fine_amount == 0
    assert returned.book.available_copies == 1


@pytest.mark.parametrize("offset, expected_fine", [
    (timedelta(0), 0.0),
    (timedelta(hours=-1), 0.0),
    (timedelta(hours=36), 2.0),
    (timedelta(seconds=1), 1.0),
    (timedelta(days=3), 3.0),
])
def test_return_fine(lib, clock, book, member, offset, expected_fine):
    due = clock.now + timedelta(days=14)
    tx = lib.borrow(book.id, member.id, due)
    clock.now = due + offset

    returned = lib.return_book(tx.id)

    assert returned.fine_amount == expected_fine


def test_calculate_fine_rate():
    due = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert calculate_fine(due, due + timedelta(hours=36), 0.5) == 1.0
    assert calculate_fine(due, due, 0.5) == 0.0


def test_return_unknown_transaction(lib):
    with pytest.raises(NotFoundError, match="Transaction not found"):
        lib.return_book("missing")


def test_return_twice_fails_and_leaves_record_unchanged(lib, clock, book, member):
    tx = lib.borrow(book.id, member.id, clock.now + timedelta(days=1))
    clock.advance(days=3)
    first = lib.return_book(tx.id)
    clock.advance(days=10)

    with pytest.raises(BusinessRuleViolation, match="already returned or not borrowed"):
        lib.return_book(tx.id)

    again = lib.find_transaction(tx.id)
    assert again.to_dict() == first.to_dict()
    assert lib.find_book(book.id).available_copies == 1


def test_return_never_raises_copies_above_total(lib, book, member):
    tx = lib.borrow(book.id, member.id, "2024-03-15")
    # shelf count already full while the loan is still open
    with database.connection(lib.db_file) as conn:
        conn.execute("UPDATE books SET available_copies = total_copies WHERE id = ?", (book.id,))
        conn.commit()

    with pytest.raises(StoreFailure):
        lib.return_book(tx.id)

    assert lib.find_transaction(tx.id).status == TransactionStatus.BORROWED
    assert lib.find_book(book.id).available_copies == 1


def test_concurrent_borrows_of_last_copy(lib, clock, book):
    readers = [lib.add_member(f"Reader {i}", f"reader{i}@example.com") for i in range(8)]
    libraries = [Library(db_file=lib.db_file, clock=clock) for _ in readers]
    start = threading.Barrier(len(readers))

    def attempt(library, reader):
        start.wait()
        try:
            library.borrow(book.id, reader.id, "2024-03-15")
            return "ok"
        except BusinessRuleViolation:
            return "unavailable"

    with ThreadPoolExecutor(max_workers=len(readers)) as pool:
        outcomes = list(pool.map(attempt, libraries, readers))

    assert outcomes.count("ok") == 1
    assert outcomes.count("unavailable") == len(readers) - 1
    assert lib.find_book(book.id).available_copies == 0
    assert _transaction_count(lib) == 1


def test_delete_blocked_by_active_loan(lib, book, member):
    tx = lib.borrow(book.id, member.id, "2024-03-15")

    with pytest.raises(BusinessRuleViolation, match="Cannot delete book with active transactions"):
        lib.remove_book(book.id)
    with pytest.raises(BusinessRuleViolation, match="Cannot delete member with active transactions"):
        lib.remove_member(member.id)

    lib.return_book(tx.id)

    lib.remove_book(book.id)
    lib.remove_member(member.id)
    assert lib.find_book(book.id) is None
    assert lib.find_member(member.id) is None
    assert lib.list_transactions() == []


def test_single_copy_scenario(lib, clock):
    book = lib.add_book("Only Copy", "Author", total_copies=1, available_copies=1)
    member = lib.add_member("Reader", "reader@example.com", is_active=True)
    due = clock.now + timedelta(days=14)

    first = lib.borrow(book.id, member.id, due)
    assert first.status == TransactionStatus.BORROWED
    assert lib.find_book(book.id).available_copies == 0

    with pytest.raises(BusinessRuleViolation, match="Book is not available"):
        lib.borrow(book.id, member.id, due)

    returned = lib.return_book(first.id)
    assert returned.status == TransactionStatus.RETURNED
    assert lib.find_book(book.id).available_copies == 1


def test_list_transactions_order_and_filters(lib, clock, member):
    hobbit = lib.add_book("The Hobbit", "Tolkien", total_copies=2)
    dune = lib.add_book("Dune", "Herbert")
    other = lib.add_member("Frodo", "frodo@example.com")

    early = lib.borrow(hobbit.id, member.id, clock.now + timedelta(days=2))
    clock.advance(hours=1)
    late = lib.borrow(dune.id, other.id, clock.now + timedelta(days=30))
    clock.advance(hours=1)
    returned = lib.borrow(hobbit.id, other.id, clock.now + timedelta(days=30))
    lib.return_book(returned.id)

    assert [t.id for t in lib.list_transactions()] == [returned.id, late.id, early.id]
    assert [t.id for t in lib.list_transactions(query="dune")] == [late.id]
    assert [t.id for t in lib.list_transactions(query="frodo")] == [returned.id, late.id]
    assert [t.id for t in lib.list_transactions(status="returned")] == [returned.id]

    with pytest.raises(ValidationError, match="Unknown status"):
        lib.list_transactions(status="misplaced")

    clock.advance(days=5)
    overdue = lib.list_transactions(overdue=True)
    assert [t.id for t in overdue] == [early.id]
    assert overdue[0].is_overdue is True
    assert overdue[0].status == TransactionStatus.BORROWED
    assert {t.id for t in lib.list_transactions(overdue=False)} == {late.id, returned.id}


def test_statistics(lib, clock, member):
    book = lib.add_book("Stats", "Author", total_copies=3)
    lib.add_member("Second", "second@example.com")
    lib.borrow(book.id, member.id, clock.now + timedelta(days=1))
    lib.borrow(book.id, member.id, clock.now + timedelta(days=10))

    clock.advance(days=2)

    assert lib.get_statistics() == {
        "total_books": 1,
        "total_members": 2,
        "active_transactions": 2,
        "overdue_transactions": 1,
    }


def test_store_failure_is_wrapped(lib, tmp_path):
    # a directory cannot be opened as a database file
    lib.db_file = str(tmp_path)

    with pytest.raises(StoreFailure):
        lib.list_books()
