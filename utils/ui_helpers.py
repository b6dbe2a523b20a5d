import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'ID - Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Left", justify="right")
        table.add_column("Borrowed", justify="right")
        table.add_column("Borrower", style="dim")
        for b in books:
            borrower = b.borrower.full_name if b.borrower and b.borrower.full_name else (b.borrowed_by or "")
            table.add_row(b.id, b.title, b.author, str(b.available_quantity),
                          str(b.borrowed_quantity), borrower)
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available_quantity}/{b.total_quantity} available]")


def print_loans_result(loans: List[Any]) -> None:
    mode = get_output_mode()

    if not loans:
        print("No loans.")
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loans", header_style="bold cyan")
        table.add_column("Book", style="magenta", no_wrap=True)
        table.add_column("Borrower")
        table.add_column("Borrowed at")
        table.add_column("Returned at")
        for loan in loans:
            table.add_row(loan.book_id, loan.borrower_id, loan.borrowed_at, loan.returned_at or "-")
        _console.print(table)
    else:
        for loan in loans:
            status = f"returned {loan.returned_at}" if loan.returned_at else "open"
            print(f"{loan.book_id} - {loan.borrower_id} since {loan.borrowed_at} ({status})")


def print_summary_result(result: Any) -> None:
    """Print a generated summary; the advisory note goes last."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(result.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        content = f"{result.summary}\n\n[bold]Tags:[/] {', '.join(result.tags)}"
        if result.note:
            content += f"\n[yellow]{result.note}[/]"
        _console.print(Panel.fit(content, title="🤖 AI Summary", border_style="blue"))
    else:
        print(f"Summary: {result.summary}")
        print(f"Tags: {', '.join(result.tags)}")
        if result.note:
            print(f"Note: {result.note}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Titles:[/] {stats.get('total_titles', 0)}\n"
            f"[bold]Copies:[/] {stats.get('total_copies', 0)}\n"
            f"[bold]Available:[/] {stats.get('available_copies', 0)}\n"
            f"[bold]Borrowed:[/] {stats.get('borrowed_copies', 0)}\n"
            f"[bold]Unique Authors:[/] {stats.get('unique_authors', 0)}"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Titles: {stats.get('total_titles', 0)}")
        print(f"Total Copies: {stats.get('total_copies', 0)}")
        print(f"Available Copies: {stats.get('available_copies', 0)}")
        print(f"Borrowed Copies: {stats.get('borrowed_copies', 0)}")
        print(f"Unique Authors: {stats.get('unique_authors', 0)}")
