import os
import json
from typing import Any, Callable, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, Callable[[Any], Any]]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_records(records: Sequence[Any], *, title: str, empty_message: str,
                   columns: List[Column], plain: Callable[[Any], str]) -> None:
    """Print records according to the current output mode.
    - plain: one line per record, or ``empty_message``
    - json: the records' ``to_dict()`` payloads as a JSON array
    - rich: a Rich table built from ``columns``
    """
    mode = get_output_mode()

    if not records:
        # same message in every mode so scripts can rely on it
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in records], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for header, _ in columns:
            table.add_column(header, style="magenta" if header == "ID" else "white")
        for r in records:
            table.add_row(*[str(getter(r)) for _, getter in columns])
        _console.print(table)
    else:
        for r in records:
            print(plain(r))


def print_books(books: Sequence[Any]) -> None:
    _print_records(
        books,
        title="📚 Books",
        empty_message="No books in library.",
        columns=[
            ("ID", lambda b: b.id),
            ("Title", lambda b: b.title),
            ("Author", lambda b: b.author),
            ("Available", lambda b: f"{b.available_copies}/{b.total_copies}"),
        ],
        plain=lambda b: f"{b.id} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies} available)",
    )


def print_members(members: Sequence[Any]) -> None:
    _print_records(
        members,
        title="👥 Members",
        empty_message="No members registered.",
        columns=[
            ("ID", lambda m: m.id),
            ("Name", lambda m: m.name),
            ("Email", lambda m: m.email),
            ("Status", lambda m: "active" if m.is_active else "inactive"),
        ],
        plain=lambda m: f"{m.id} - {m.name} <{m.email}> ({'active' if m.is_active else 'inactive'})",
    )


def _transaction_label(t: Any) -> str:
    return "OVERDUE" if t.is_overdue else t.status.value


def print_transactions(transactions: Sequence[Any]) -> None:
    _print_records(
        transactions,
        title="🔄 Transactions",
        empty_message="No transactions found.",
        columns=[
            ("ID", lambda t: t.id),
            ("Book", lambda t: t.book.title if t.book else t.book_id),
            ("Member", lambda t: t.member.name if t.member else t.member_id),
            ("Due", lambda t: t.due_date.date().isoformat()),
            ("Status", _transaction_label),
            ("Fine", lambda t: f"{t.fine_amount:.2f}"),
        ],
        plain=lambda t: (
            f"{t.id} - {t.book.title if t.book else t.book_id} -> "
            f"{t.member.name if t.member else t.member_id} "
            f"due {t.due_date.date().isoformat()} [{_transaction_label(t)}] fine {t.fine_amount:.2f}"
        ),
    )


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard counters according to the current output mode."""
    mode = get_output_mode()

    labels = {
        "total_books": "Total Books",
        "total_members": "Total Members",
        "active_transactions": "Active Loans",
        "overdue_transactions": "Overdue Loans",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
