import sqlite3
import threading

import pytest

import database
from book import BookState, BorrowerContact
from errors import (
    AuthRequiredError,
    NotFoundError,
    OutOfStockError,
    PermissionDeniedError,
    ValidationError,
)
from library import Library


def _counters(book):
    return book.available_quantity, book.total_quantity


def test_create_book_sets_available_to_total(lib):
    book = lib.create_book("T", "A", 3, role="admin")

    assert book.available_quantity == 3
    assert book.total_quantity == 3
    assert book.is_borrowed is False
    assert book.borrowed_by is None
    assert book.state is BookState.AVAILABLE

    stored = lib.find_book(book.id)
    assert _counters(stored) == (3, 3)
    assert stored.title == "T"


def test_create_book_trims_and_keeps_ai_fields(lib):
    book = lib.create_book("  Dune ", " Frank Herbert ", 2, ai_summary=" Spice. ",
                           ai_tags=["sci-fi", " sci-fi", "", "desert"], role="librarian")

    stored = lib.find_book(book.id)
    assert stored.title == "Dune"
    assert stored.author == "Frank Herbert"
    assert stored.ai_summary == "Spice."
    assert stored.ai_tags == ["sci-fi", "desert"]


@pytest.mark.parametrize("title, author, quantity", [
    ("", "Author", 1),
    ("   ", "Author", 1),
    ("T", "", 1),
    ("T", "A", 0),
    ("T", "A", -2),
    ("T", "A", float("inf")),
    ("T", "A", float("nan")),
    ("T", "A", 1.5),
    ("T", "A", True),
    ("T", "A", "3"),
])
def test_create_book_rejects_invalid_input(lib, title, author, quantity):
    with pytest.raises(ValidationError):
        lib.create_book(title, author, quantity, role="admin")
    assert lib.list_books() == []


def test_create_book_accepts_integral_float(lib):
    book = lib.create_book("T", "A", 2.0, role="admin")
    assert _counters(book) == (2, 2)


def test_create_and_delete_require_staff_role(lib):
    with pytest.raises(AuthRequiredError):
        lib.create_book("T", "A", 1, role=None)
    with pytest.raises(PermissionDeniedError):
        lib.create_book("T", "A", 1, role="member")

    book = lib.create_book("T", "A", 1, role="admin")
    with pytest.raises(PermissionDeniedError):
        lib.delete_book(book.id, role="member")
    assert lib.find_book(book.id) is not None


def test_borrow_decrements_and_records_borrower(lib, contact):
    book = lib.create_book("T", "A", 2, role="admin")

    updated = lib.borrow(book, "user-1", contact)

    assert _counters(updated) == (1, 2)
    assert updated.borrowed_by == "user-1"
    assert updated.borrowed_at is not None
    assert updated.is_borrowed is False
    assert updated.state is BookState.PARTIALLY_BORROWED
    assert updated.borrower.full_name == "Ada Reader"

    profile = lib.get_profile("user-1")
    assert profile.email == "ada@example.com"
    assert profile.role == "member"

    loans = lib.list_loans(book.id)
    assert [loan.borrower_id for loan in loans] == ["user-1"]


def test_borrow_last_copy_marks_book_borrowed(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")

    updated = lib.borrow(book, "user-1", contact)

    assert updated.available_quantity == 0
    assert updated.is_borrowed is True
    assert updated.state is BookState.FULLY_BORROWED


def test_borrow_requires_identity(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")

    with pytest.raises(AuthRequiredError):
        lib.borrow(book, None, contact)
    with pytest.raises(AuthRequiredError):
        lib.borrow(book, "  ", contact)
    assert lib.find_book(book.id).available_quantity == 1


@pytest.mark.parametrize("contact", [
    None,
    BorrowerContact(full_name="", email="a@b.c", phone="1"),
    BorrowerContact(full_name="Ada", email=" ", phone="1"),
    BorrowerContact(full_name="Ada", email="a@b.c", phone=""),
])
def test_borrow_requires_full_contact(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")

    with pytest.raises(ValidationError):
        lib.borrow(book, "user-1", contact)
    assert lib.find_book(book.id).available_quantity == 1
    assert lib.get_profile("user-1") is None


def test_borrow_out_of_stock_leaves_counters_unchanged(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")
    empty = lib.borrow(book, "user-1", contact)

    with pytest.raises(OutOfStockError):
        lib.borrow(empty, "user-2", contact)

    stored = lib.find_book(book.id)
    assert _counters(stored) == (0, 1)
    assert stored.borrowed_by == "user-1"
    assert len(lib.list_loans(book.id)) == 1


def test_borrow_with_stale_snapshot_loses_last_copy(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")
    snapshot_a = lib.find_book(book.id)
    snapshot_b = lib.find_book(book.id)

    lib.borrow(snapshot_a, "user-a", contact)
    with pytest.raises(OutOfStockError):
        lib.borrow(snapshot_b, "user-b", contact)

    assert lib.find_book(book.id).available_quantity == 0


def test_borrow_with_stale_snapshot_retries_when_copies_remain(lib, contact):
    book = lib.create_book("T", "A", 3, role="admin")
    snapshot_a = lib.find_book(book.id)
    snapshot_b = lib.find_book(book.id)

    lib.borrow(snapshot_a, "user-a", contact)
    updated = lib.borrow(snapshot_b, "user-b", contact)

    assert updated.available_quantity == 1
    assert updated.borrowed_by == "user-b"


def test_concurrent_borrows_of_last_copy(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")
    snapshot = lib.find_book(book.id)
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def worker(user_id):
        barrier.wait()
        try:
            lib.borrow(snapshot, user_id, contact)
            result = "ok"
        except OutOfStockError:
            result = "out"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(f"user-{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["ok", "out"]
    stored = lib.find_book(book.id)
    assert stored.available_quantity == 0
    assert len(lib.list_loans(book.id)) == 1


def test_borrow_of_deleted_book_is_not_found(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")
    lib.delete_book(book.id, role="admin")

    with pytest.raises(NotFoundError):
        lib.borrow(book, "user-1", contact)


def test_borrow_return_round_trip_restores_state(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")

    borrowed = lib.borrow(book, "user-1", contact)
    returned = lib.return_book(borrowed)

    assert _counters(returned) == (1, 1)
    assert returned.borrowed_by is None
    assert returned.borrowed_at is None
    assert returned.is_borrowed is False
    assert returned.borrower is None
    assert lib.list_loans(book.id) == []
    closed = lib.list_loans(book.id, open_only=False)
    assert len(closed) == 1 and closed[0].returned_at is not None


def test_return_twice_never_exceeds_total(lib, contact):
    book = lib.create_book("T", "A", 2, role="admin")
    borrowed = lib.borrow(book, "user-1", contact)

    once = lib.return_book(borrowed)
    twice = lib.return_book(once)

    assert _counters(once) == (2, 2)
    assert _counters(twice) == (2, 2)


def test_return_of_fully_available_book_is_noop(lib):
    book = lib.create_book("T", "A", 1, role="admin")

    returned = lib.return_book(book)

    assert _counters(returned) == (1, 1)
    assert returned.borrowed_by is None


def test_return_with_stale_full_snapshot_still_releases_copy(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")
    stale = lib.find_book(book.id)
    lib.borrow(book, "user-1", contact)

    returned = lib.return_book(stale)

    assert _counters(returned) == (1, 1)
    assert lib.list_loans(book.id) == []


def test_return_keeps_remaining_borrower_attribution(lib, contact):
    book = lib.create_book("T", "A", 3, role="admin")
    book = lib.borrow(book, "user-1", contact)
    book = lib.borrow(book, "user-2", contact)

    returned = lib.return_book(book, "user-2")

    assert returned.available_quantity == 2
    assert returned.borrowed_by == "user-1"
    assert [loan.borrower_id for loan in lib.list_loans(book.id)] == ["user-1"]


def test_return_for_borrower_without_loan_is_not_found(lib, contact):
    book = lib.create_book("T", "A", 2, role="admin")
    book = lib.borrow(book, "user-1", contact)

    with pytest.raises(NotFoundError):
        lib.return_book(book, "user-2")
    assert lib.find_book(book.id).available_quantity == 1


def test_counters_stay_within_bounds(lib, contact):
    book = lib.create_book("T", "A", 2, role="admin")
    for step in ["borrow", "borrow", "borrow", "return", "return", "return", "borrow"]:
        current = lib.find_book(book.id)
        try:
            if step == "borrow":
                lib.borrow(current, "user-1", contact)
            else:
                lib.return_book(current)
        except OutOfStockError:
            pass
        current = lib.find_book(book.id)
        assert 0 <= current.available_quantity <= current.total_quantity


def test_delete_book_ignores_outstanding_loans(lib, contact):
    book = lib.create_book("T", "A", 1, role="admin")
    lib.borrow(book, "user-1", contact)

    assert lib.delete_book(book.id, role="librarian") is True
    assert lib.find_book(book.id) is None
    assert lib.list_loans(book.id, open_only=False) == []


def test_delete_unknown_book_returns_false(lib):
    assert lib.delete_book("does-not-exist", role="admin") is False


def test_list_books_newest_first_and_filtered(lib):
    lib.create_book("Old Tales", "Grimm", 1, role="admin")
    lib.create_book("New Worlds", "Le Guin", 1, role="admin")

    assert [b.title for b in lib.list_books()] == ["New Worlds", "Old Tales"]
    assert [b.title for b in lib.list_books("grimm")] == ["Old Tales"]
    assert [b.title for b in lib.list_books("WORLDS")] == ["New Worlds"]
    assert lib.list_books("nothing") == []


def test_borrow_keeps_existing_role(lib, contact):
    lib.set_role("staff-1", "librarian")
    book = lib.create_book("T", "A", 1, role=lib.get_role("staff-1"))

    lib.borrow(book, "staff-1", contact)

    profile = lib.get_profile("staff-1")
    assert profile.role == "librarian"
    assert profile.full_name == "Ada Reader"


def test_get_role_defaults(lib):
    assert lib.get_role(None) is None
    assert lib.get_role("") is None
    assert lib.get_role("stranger") == "member"


def test_set_role_rejects_unknown_role(lib):
    with pytest.raises(ValidationError):
        lib.set_role("user-1", "superuser")


def test_statistics(lib, contact):
    first = lib.create_book("T1", "A", 2, role="admin")
    lib.create_book("T2", "B", 3, role="admin")
    lib.borrow(first, "user-1", contact)

    stats = lib.get_statistics()

    assert stats == {
        "total_titles": 2,
        "total_copies": 5,
        "available_copies": 4,
        "borrowed_copies": 1,
        "open_loans": 1,
        "unique_authors": 2,
    }


def test_persistence_across_instances(tmp_path, contact):
    db_file = str(tmp_path / "shared.db")
    lib1 = Library(db_file=db_file)
    book = lib1.create_book("Sapiens", "Yuval Noah Harari", 2, role="admin")
    lib1.borrow(book, "user-1", contact)

    lib2 = Library(db_file=db_file)
    stored = lib2.find_book(book.id)
    assert stored.title == "Sapiens"
    assert _counters(stored) == (1, 2)


def test_migrates_books_table_without_quantity_columns(tmp_path):
    db_file = str(tmp_path / "legacy.db")
    conn = sqlite3.connect(db_file)
    conn.execute("""
        CREATE TABLE books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            is_borrowed BOOLEAN NOT NULL DEFAULT 0,
            borrowed_by TEXT,
            borrowed_at TEXT
        )
    """)
    conn.execute("INSERT INTO books (id, title, author, is_borrowed) VALUES ('a', 'Lent', 'X', 1)")
    conn.execute("INSERT INTO books (id, title, author, is_borrowed) VALUES ('b', 'Shelved', 'Y', 0)")
    conn.commit()
    conn.close()

    lib = Library(db_file=db_file)

    assert database.DATABASE_FILE == db_file
    assert _counters(lib.find_book("a")) == (0, 1)
    assert _counters(lib.find_book("b")) == (1, 1)
    assert lib.find_book("b").ai_tags == []


def _legacy_db(tmp_path, rows, with_created_at=False):
    db_file = str(tmp_path / "legacy.db")
    conn = sqlite3.connect(db_file)
    created_at = ", created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP" if with_created_at else ""
    conn.execute(f"""
        CREATE TABLE books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            is_borrowed BOOLEAN NOT NULL DEFAULT 0,
            borrowed_by TEXT,
            borrowed_at TEXT{created_at}
        )
    """)
    for row in rows:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn.execute(f"INSERT INTO books ({columns}) VALUES ({placeholders})", tuple(row.values()))
    conn.commit()
    conn.close()
    return db_file


def test_migrated_borrower_can_return_their_copy(tmp_path):
    db_file = _legacy_db(tmp_path, [
        {"id": "a", "title": "T", "author": "A", "is_borrowed": 1,
         "borrowed_by": "user-x", "borrowed_at": "2024-01-02T10:00:00+00:00"},
    ])

    lib = Library(db_file=db_file)
    book = lib.find_book("a")

    assert _counters(book) == (0, 1)
    assert [loan.borrower_id for loan in lib.list_loans("a")] == ["user-x"]

    returned = lib.return_book(book, "user-x")

    assert _counters(returned) == (1, 1)
    assert returned.borrowed_by is None
    assert lib.list_loans("a") == []


def test_migration_does_not_duplicate_loans(tmp_path):
    db_file = _legacy_db(tmp_path, [
        {"id": "a", "title": "T", "author": "A", "is_borrowed": 1, "borrowed_by": "user-x"},
    ])

    Library(db_file=db_file)
    lib = Library(db_file=db_file)

    loans = lib.list_loans("a")
    assert len(loans) == 1
    assert "T" in loans[0].borrowed_at


def test_migration_normalizes_created_at_for_ordering(tmp_path):
    db_file = _legacy_db(tmp_path, [
        {"id": "old", "title": "Older", "author": "A", "created_at": "2024-01-02 09:00:00"},
        {"id": "new", "title": "Newer", "author": "A", "created_at": "2024-01-02 11:00:00"},
    ], with_created_at=True)

    lib = Library(db_file=db_file)

    assert lib.find_book("old").created_at == "2024-01-02T09:00:00+00:00"
    added = lib.create_book("Fresh", "B", role="admin")
    assert [b.id for b in lib.list_books()] == [added.id, "new", "old"]


def test_migration_backfills_iso_created_at(tmp_path):
    db_file = _legacy_db(tmp_path, [{"id": "a", "title": "T", "author": "A"}])

    lib = Library(db_file=db_file)

    created_at = lib.find_book("a").created_at
    assert created_at[10] == "T"
    assert created_at.endswith("+00:00")
