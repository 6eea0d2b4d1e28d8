from datetime import datetime, timedelta, timezone

import pytest

import database
from library import Library


class FakeClock:
    """Controllable time source for Library(clock=...)."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, monkeypatch, clock):
    # A unique database file per test; Library() instances created elsewhere
    # (CLI commands) pick it up through database.DATABASE_FILE.
    db_file = str(tmp_path / "library_test.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    lib = Library(db_file=db_file, clock=clock, fine_per_day=1.0)
    yield lib
    lib.close()
