import asyncio
import subprocess
import sys
from typing import Optional

import typer

import database
from ai_summary_service import SummaryGenerator
from book import BorrowerContact
from config import settings
from errors import LibraryError, ServiceError
from library import Library
from utils.ui_helpers import (
    set_output_mode,
    print_list_result,
    print_loans_result,
    print_stats_result,
    print_summary_result,
)

APP_NAME = "Library CLI"


class LibraryManager:
    """Lazily created Library, rebuilt when the database file changes."""
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = getattr(database, "DATABASE_FILE", None)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library()
            cls._db_file_snapshot = current_db
        return cls._instance


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


def _require_book(lib: Library, book_id: str):
    book = lib.find_book(book_id)
    if not book:
        _fail(f"Book {book_id} not found.")
    return book


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)

USER_OPTION = typer.Option(
    None, "--user", "-u", envvar="LIBRARY_USER",
    help="Acting user id (as issued by the auth provider)",
)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (output mode)."""
    if output:
        set_output_mode(output)


@app.command("list")
def cli_list(query: Optional[str] = typer.Option(None, "--query", "-q", help="Filter by title or author")):
    """List books, newest first."""
    print_list_result(LibraryManager.get_instance().list_books(query))


@app.command("add")
def cli_add(
    title: str,
    author: str,
    quantity: int = typer.Option(1, "--quantity", "-n", help="Number of copies"),
    summarize: bool = typer.Option(False, "--summarize", "-s", help="Generate an AI summary and tags first"),
    user: Optional[str] = USER_OPTION,
):
    """Add a title (admins and librarians only)."""
    lib = LibraryManager.get_instance()
    ai_summary = None
    ai_tags = None
    if summarize:
        try:
            result = asyncio.run(SummaryGenerator().generate(title, author))
            ai_summary, ai_tags = result.summary, result.tags
            if result.note:
                print(f"Note: {result.note}")
        except ServiceError as e:
            print(f"AI summary unavailable: {e}")
        except LibraryError as e:
            _fail(str(e))
    try:
        book = lib.create_book(title, author, quantity, ai_summary, ai_tags, role=lib.get_role(user))
    except LibraryError as e:
        _fail(str(e))
    print(f"Successfully added: {book.title} by {book.author} ({book.total_quantity} copies, id {book.id})")


@app.command("remove")
def cli_remove(book_id: str, user: Optional[str] = USER_OPTION):
    """Remove a title by id (admins and librarians only)."""
    lib = LibraryManager.get_instance()
    try:
        removed = lib.delete_book(book_id, role=lib.get_role(user))
    except LibraryError as e:
        _fail(str(e))
    if removed:
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")


@app.command("borrow")
def cli_borrow(
    book_id: str,
    user: Optional[str] = USER_OPTION,
    name: str = typer.Option("", "--name", help="Full name"),
    email: str = typer.Option("", "--email", help="Email"),
    phone: str = typer.Option("", "--phone", help="Phone"),
):
    """Borrow one copy of a book."""
    lib = LibraryManager.get_instance()
    book = _require_book(lib, book_id)
    try:
        updated = lib.borrow(book, user, BorrowerContact(full_name=name, email=email, phone=phone))
    except LibraryError as e:
        _fail(str(e))
    print(f"Borrowed: {updated.title} ({updated.available_quantity}/{updated.total_quantity} left)")


@app.command("return")
def cli_return(book_id: str, user: Optional[str] = USER_OPTION):
    """Return one copy of a book."""
    lib = LibraryManager.get_instance()
    book = _require_book(lib, book_id)
    try:
        updated = lib.return_book(book, user)
    except LibraryError as e:
        _fail(str(e))
    print(f"Returned: {updated.title} ({updated.available_quantity}/{updated.total_quantity} available)")


@app.command("loans")
def cli_loans(
    book_id: Optional[str] = typer.Option(None, "--book", "-b", help="Only loans of this book"),
    all_loans: bool = typer.Option(False, "--all", "-a", help="Include returned loans"),
):
    """List loans (open ones by default)."""
    print_loans_result(LibraryManager.get_instance().list_loans(book_id, open_only=not all_loans))


@app.command("summarize")
def cli_summarize(title: str, author: str):
    """Generate a summary and tags without adding the book."""
    try:
        result = asyncio.run(SummaryGenerator().generate(title, author))
    except LibraryError as e:
        _fail(str(e))
    print_summary_result(result)


@app.command("grant")
def cli_grant(user_id: str, role: str):
    """Set a user's role: admin, librarian or member."""
    try:
        profile = LibraryManager.get_instance().set_role(user_id, role)
    except LibraryError as e:
        _fail(str(e))
    print(f"{profile.id} is now {profile.role}.")


@app.command("stats")
def cli_stats():
    """Show inventory statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(reload: bool = typer.Option(settings.debug, "--reload/--no-reload", help="Restart on code changes")):
    """Run the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
