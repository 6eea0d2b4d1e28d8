import subprocess
import sys
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console

from config import settings
from library import Library, LibraryError
from utils.ui_helpers import (
    print_books,
    print_members,
    print_stats_result,
    print_transactions,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()

app = typer.Typer(help=APP_NAME)


def get_library() -> Library:
    """A fresh Library per command; it picks up database.DATABASE_FILE at call time."""
    return Library()


def _fail(exc: LibraryError) -> None:
    print(f"Error: {exc}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)


# --- Books ---
@app.command("books")
def cli_books(query: Optional[str] = typer.Option(None, "--query", "-q", help="Filter by title or author")):
    """List all books, newest first."""
    print_books(get_library().list_books(query=query))


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    description: Optional[str] = typer.Option(None, "--description"),
    copies: int = typer.Option(1, "--copies", "-c", help="Total number of copies"),
):
    """Add a book to the catalogue."""
    try:
        book = get_library().add_book(title, author, isbn=isbn, genre=genre,
                                      description=description, total_copies=copies)
    except LibraryError as e:
        _fail(e)
    print(f"Added book: {book.title} by {book.author} ({book.id})")


@app.command("remove-book")
def cli_remove_book(book_id: str):
    """Delete a book that has no copies on loan."""
    try:
        get_library().remove_book(book_id)
    except LibraryError as e:
        _fail(e)
    print(f"Book {book_id} has been removed.")


# --- Members ---
@app.command("members")
def cli_members(query: Optional[str] = typer.Option(None, "--query", "-q", help="Filter by name or email")):
    """List members, most recently joined first."""
    print_members(get_library().list_members(query=query))


@app.command("add-member")
def cli_add_member(
    name: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone"),
    address: Optional[str] = typer.Option(None, "--address"),
    inactive: bool = typer.Option(False, "--inactive", help="Register the member as inactive"),
):
    """Register a new member."""
    try:
        member = get_library().add_member(name, email, phone=phone, address=address, is_active=not inactive)
    except LibraryError as e:
        _fail(e)
    print(f"Added member: {member.name} <{member.email}> ({member.id})")


@app.command("remove-member")
def cli_remove_member(member_id: str):
    """Delete a member who holds no borrowed books."""
    try:
        get_library().remove_member(member_id)
    except LibraryError as e:
        _fail(e)
    print(f"Member {member_id} has been removed.")


@app.command("activate")
def cli_activate(member_id: str):
    """Re-enable borrowing for a member."""
    try:
        member = get_library().set_member_active(member_id, True)
    except LibraryError as e:
        _fail(e)
    print(f"Member {member.name} is now active.")


@app.command("deactivate")
def cli_deactivate(member_id: str):
    """Suspend borrowing for a member."""
    try:
        member = get_library().set_member_active(member_id, False)
    except LibraryError as e:
        _fail(e)
    print(f"Member {member.name} is now inactive.")


# --- Transactions ---
@app.command("transactions")
def cli_transactions(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Filter by book title or member name"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="BORROWED | RETURNED"),
    overdue: bool = typer.Option(False, "--overdue", help="Only loans past their due date"),
):
    """List transactions, most recent borrow first."""
    try:
        transactions = get_library().list_transactions(query=query, status=status, overdue=overdue or None)
    except LibraryError as e:
        _fail(e)
    print_transactions(transactions)


@app.command("borrow")
def cli_borrow(
    book_id: str,
    member_id: str,
    due: Optional[str] = typer.Option(None, "--due", help="Due date (YYYY-MM-DD or ISO-8601)"),
    days: int = typer.Option(settings.default_loan_days, "--days", "-d", help="Loan length when --due is omitted"),
):
    """Lend a book to a member."""
    if due:
        due_date = due
    else:
        # end of the last loan day, UTC
        last_day = datetime.now(timezone.utc).date() + timedelta(days=days)
        due_date = datetime.combine(last_day, time(23, 59, 59), tzinfo=timezone.utc)
    try:
        transaction = get_library().borrow(book_id, member_id, due_date)
    except LibraryError as e:
        _fail(e)
    print(
        f"Borrowed '{transaction.book.title}' to {transaction.member.name}, "
        f"due {transaction.due_date.date().isoformat()}. Transaction: {transaction.id}"
    )


@app.command("return")
def cli_return(transaction_id: str):
    """Return a borrowed book and report any fine."""
    try:
        transaction = get_library().return_book(transaction_id)
    except LibraryError as e:
        _fail(e)
    print(f"Returned '{transaction.book.title}'. Fine: {transaction.fine_amount:.2f}")


@app.command("stats")
def cli_stats():
    """Show dashboard counters."""
    print_stats_result(get_library().get_statistics())


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}")
    cmd = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        cmd.append("--reload")
    try:
        subprocess.run(cmd, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[dim]Server stopped[/]")


if __name__ == "__main__":
    app()
