import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from config import settings
from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch):
    monkeypatch.delenv("LIBRARY_USER", raising=False)
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    monkeypatch.setattr(settings, "openai_api_key", None)


def _add_book(lib, title="Test Book", author="Test Author", quantity=1):
    return lib.create_book(title, author, quantity, role="admin")


def test_list_no_books(lib):
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_list_books_plain(lib):
    book = _add_book(lib, quantity=2)

    result = runner.invoke(app, ["list"])

    assert result.exit_code == 0
    assert f"{book.id} - Test Book by Test Author [2/2 available]" in result.stdout


def test_list_books_json(lib):
    _add_book(lib)

    result = runner.invoke(app, ["--output", "json", "list"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["title"] == "Test Book"
    assert payload[0]["available_quantity"] == 1


def test_add_book_as_librarian(lib):
    lib.set_role("lib-1", "librarian")

    result = runner.invoke(app, ["add", "Dune", "Frank Herbert", "--quantity", "3", "--user", "lib-1"])

    assert result.exit_code == 0
    assert "Successfully added: Dune by Frank Herbert (3 copies" in result.stdout
    assert lib.list_books()[0].total_quantity == 3


def test_add_book_with_fallback_summary(lib):
    lib.set_role("lib-1", "librarian")

    result = runner.invoke(app, ["add", "Harry and the Secret Wand", "A. Wizard", "--summarize", "--user", "lib-1"])

    assert result.exit_code == 0
    assert "Note: Fallback AI used" in result.stdout
    book = lib.list_books()[0]
    assert "fantasy" in book.ai_tags
    assert "Harry and the Secret Wand" in book.ai_summary


def test_add_book_requires_login(lib):
    result = runner.invoke(app, ["add", "Dune", "Frank Herbert"])

    assert result.exit_code == 1
    assert "Error: You must be logged in to add books." in result.stdout


def test_add_book_rejected_for_member(lib):
    result = runner.invoke(app, ["add", "Dune", "Frank Herbert", "--user", "reader"])

    assert result.exit_code == 1
    assert "Only admins and librarians" in result.stdout


def test_borrow_and_return(lib):
    book = _add_book(lib)
    args = ["borrow", book.id, "--user", "u-1", "--name", "Ada", "--email", "ada@example.com", "--phone", "555"]

    result = runner.invoke(app, args)
    assert result.exit_code == 0
    assert "Borrowed: Test Book (0/1 left)" in result.stdout

    result = runner.invoke(app, args)
    assert result.exit_code == 1
    assert "out of stock" in result.stdout

    result = runner.invoke(app, ["return", book.id, "--user", "u-1"])
    assert result.exit_code == 0
    assert "Returned: Test Book (1/1 available)" in result.stdout


def test_borrow_missing_contact(lib):
    book = _add_book(lib)

    result = runner.invoke(app, ["borrow", book.id, "--user", "u-1"])

    assert result.exit_code == 1
    assert "Full name is required." in result.stdout


def test_borrow_unknown_book(lib):
    result = runner.invoke(app, ["borrow", "nope", "--user", "u-1"])
    assert result.exit_code == 1
    assert "Book nope not found." in result.stdout


def test_remove_book(lib):
    book = _add_book(lib)
    lib.set_role("boss", "admin")

    result = runner.invoke(app, ["remove", book.id, "--user", "boss"])
    assert result.exit_code == 0
    assert f"Book {book.id} has been removed." in result.stdout

    result = runner.invoke(app, ["remove", book.id, "--user", "boss"])
    assert f"Book {book.id} not found." in result.stdout


def test_loans_listing(lib, contact):
    book = _add_book(lib)
    lib.borrow(book, "u-1", contact)

    result = runner.invoke(app, ["loans"])

    assert result.exit_code == 0
    assert f"{book.id} - u-1 since" in result.stdout
    assert "(open)" in result.stdout


def test_summarize_uses_fallback(lib):
    result = runner.invoke(app, ["summarize", "Harry and the Secret Wand", "A. Wizard"])

    assert result.exit_code == 0
    assert 'Summary: A short, engaging summary for "Harry and the Secret Wand" by A. Wizard.' in result.stdout
    assert "Tags: fantasy, magic, adventure" in result.stdout


def test_summarize_blank_title(lib):
    result = runner.invoke(app, ["summarize", " ", "A. Wizard"])
    assert result.exit_code == 1
    assert "Title is required." in result.stdout


def test_grant_role(lib):
    result = runner.invoke(app, ["grant", "u-9", "librarian"])
    assert result.exit_code == 0
    assert "u-9 is now librarian." in result.stdout
    assert lib.get_role("u-9") == "librarian"

    result = runner.invoke(app, ["grant", "u-9", "wizard"])
    assert result.exit_code == 1


def test_stats(lib):
    _add_book(lib, quantity=2)

    result = runner.invoke(app, ["stats"])

    assert result.exit_code == 0
    assert "Total Titles: 1" in result.stdout
    assert "Total Copies: 2" in result.stdout


@patch("main.subprocess.run")
def test_serve_command(mock_subprocess_run, lib):
    result = runner.invoke(app, ["serve", "--no-reload"])

    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "--host" in args
    assert "--port" in args
    assert "--reload" not in args
