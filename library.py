import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

import database
from book import Book, BorrowerContact, Loan, Profile
from config import settings
from database import get_db_connection, initialize_database
from errors import (
    AuthRequiredError,
    ConcurrentUpdateError,
    NotFoundError,
    OutOfStockError,
    PermissionDeniedError,
    ValidationError,
)
from utils.validators import QuantityValidator, RoleValidator, TextValidator, STAFF_ROLES


logger = logging.getLogger(__name__)

# Books joined with the profile of their current borrower, for display.
_BOOK_SELECT = """
    SELECT b.id, b.title, b.author, b.is_borrowed, b.borrowed_by, b.borrowed_at,
           b.ai_summary, b.ai_tags, b.total_quantity, b.available_quantity, b.created_at,
           p.id AS borrower_id, p.full_name AS borrower_full_name,
           p.email AS borrower_email, p.phone AS borrower_phone, p.role AS borrower_role
    FROM books b
    LEFT JOIN profiles p ON p.id = b.borrowed_by
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Library:
    """Inventory ledger: stock counters, loans and borrower attribution.

    Every change to ``available_quantity`` is a conditional write guarded by
    the value the caller last read, so two sessions racing for the last copy
    cannot both win.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Tests (and callers) may point the module-level helpers in database.py
        # at a different file.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()
        self.retry_attempts = max(1, settings.borrow_retry_attempts)

    # ------------------------- Core operations ------------------------- #
    def create_book(self, title: str, author: str, total_quantity: int = 1,
                    ai_summary: Optional[str] = None, ai_tags: Optional[List[str]] = None,
                    *, role: Optional[str]) -> Book:
        """Add a title with ``total_quantity`` copies, all of them available."""
        self._require_staff(role, "add books")

        title = TextValidator.validate_title(title)
        author = TextValidator.validate_author(author)
        total = QuantityValidator.validate_total(total_quantity)
        summary = ai_summary.strip() if isinstance(ai_summary, str) and ai_summary.strip() else None
        tags = TextValidator.normalize_tags(ai_tags)

        book = Book(
            id=uuid.uuid4().hex,
            title=title,
            author=author,
            total_quantity=total,
            available_quantity=total,
            ai_summary=summary,
            ai_tags=tags,
            created_at=_now(),
        )

        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO books (id, title, author, is_borrowed, borrowed_by, borrowed_at,
                                   ai_summary, ai_tags, total_quantity, available_quantity, created_at)
                VALUES (?, ?, ?, 0, NULL, NULL, ?, ?, ?, ?, ?)
                """,
                (book.id, book.title, book.author, book.ai_summary, json.dumps(book.ai_tags),
                 book.total_quantity, book.available_quantity, book.created_at)
            )
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Book created: id={book.id}, title={book.title!r}, copies={total}")
        return book

    def borrow(self, book: Book, borrower_id: Optional[str], contact: Optional[BorrowerContact]) -> Book:
        """Take one copy of ``book`` for ``borrower_id``.

        ``book`` is the caller's last read of the title; its ``available_quantity``
        is the value the decrement is conditioned on. On a lost race the book is
        re-read and the decrement retried, up to ``retry_attempts`` times.
        """
        if borrower_id is None or not str(borrower_id).strip():
            raise AuthRequiredError("You must be logged in to borrow a book.")
        borrower_id = str(borrower_id).strip()

        if contact is None:
            raise ValidationError("Please enter full name, email and phone before borrowing.")
        contact = BorrowerContact(
            full_name=TextValidator.require(contact.full_name, "Full name"),
            email=TextValidator.require(contact.email, "Email"),
            phone=TextValidator.require(contact.phone, "Phone"),
        )

        if book.available_quantity <= 0:
            raise OutOfStockError(f"'{book.title}' is out of stock.")

        self.upsert_profile(borrower_id, contact)

        expected = book.available_quantity
        for _ in range(self.retry_attempts):
            new_available = expected - 1
            borrowed_at = _now()
            conn = get_db_connection()
            try:
                cursor = conn.execute(
                    """
                    UPDATE books
                    SET available_quantity = ?, is_borrowed = ?, borrowed_by = ?, borrowed_at = ?
                    WHERE id = ? AND available_quantity = ?
                    """,
                    (new_available, new_available == 0, borrower_id, borrowed_at, book.id, expected)
                )
                if cursor.rowcount == 1:
                    conn.execute(
                        "INSERT INTO loans (book_id, borrower_id, borrowed_at) VALUES (?, ?, ?)",
                        (book.id, borrower_id, borrowed_at)
                    )
                    conn.commit()
                    logger.info(f"Book borrowed: id={book.id}, borrower={borrower_id}, available={new_available}")
                    return self._reload(book.id)
                conn.rollback()
            finally:
                conn.close()

            fresh = self.find_book(book.id)
            if fresh is None:
                raise NotFoundError(f"Book {book.id} not found.")
            logger.warning(
                f"Borrow conflict on book {book.id}: expected {expected} available, found {fresh.available_quantity}"
            )
            if fresh.available_quantity <= 0:
                raise OutOfStockError(f"'{fresh.title}' is out of stock.")
            expected = fresh.available_quantity

        raise OutOfStockError(f"'{book.title}' changed while borrowing; re-fetch and try again.")

    def return_book(self, book: Book, borrower_id: Optional[str] = None) -> Book:
        """Release one copy of ``book``, never going above ``total_quantity``.

        Closes ``borrower_id``'s most recent open loan, or the most recent open
        loan of anyone when no borrower is given. Returning a book that is
        already fully available changes nothing.
        """
        borrower_id = borrower_id.strip() if isinstance(borrower_id, str) and borrower_id.strip() else None

        current = book
        for _ in range(self.retry_attempts):
            expected = current.available_quantity
            next_available = min(expected + 1, current.total_quantity)
            conn = get_db_connection()
            try:
                loan = self._open_loan(conn, book.id, borrower_id)
                if borrower_id and loan is None:
                    raise NotFoundError(f"{borrower_id} has no open loan of '{book.title}'.")

                if next_available == expected:
                    row = conn.execute(
                        "SELECT available_quantity FROM books WHERE id = ?", (book.id,)
                    ).fetchone()
                    if row is not None and row["available_quantity"] == expected:
                        logger.info(f"Return ignored: book {book.id} already fully available")
                        return self._reload(book.id)
                else:
                    holder = self._open_loan(conn, book.id, None, exclude_id=loan.id if loan else None)
                    cursor = conn.execute(
                        """
                        UPDATE books
                        SET available_quantity = ?, is_borrowed = ?, borrowed_by = ?, borrowed_at = ?
                        WHERE id = ? AND available_quantity = ?
                        """,
                        (next_available, next_available == 0,
                         holder.borrower_id if holder else None,
                         holder.borrowed_at if holder else None,
                         book.id, expected)
                    )
                    if cursor.rowcount == 1:
                        if loan is not None:
                            conn.execute("UPDATE loans SET returned_at = ? WHERE id = ?", (_now(), loan.id))
                        conn.commit()
                        logger.info(f"Book returned: id={book.id}, available={next_available}")
                        return self._reload(book.id)
                    conn.rollback()
            finally:
                conn.close()

            fresh = self.find_book(book.id)
            if fresh is None:
                raise NotFoundError(f"Book {book.id} not found.")
            logger.warning(
                f"Return conflict on book {book.id}: expected {expected} available, found {fresh.available_quantity}"
            )
            current = fresh

        raise ConcurrentUpdateError(f"'{book.title}' changed while returning; re-fetch and try again.")

    def delete_book(self, book_id: str, *, role: Optional[str]) -> bool:
        """Remove a title in any state. Returns False when the id is unknown.

        Outstanding loans do not block deletion; they are dropped with the book.
        """
        self._require_staff(role, "remove books")

        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                conn.execute("DELETE FROM loans WHERE book_id = ?", (book_id,))
            conn.commit()
        finally:
            conn.close()

        if deleted:
            logger.info(f"Book deleted: id={book_id}")
        return deleted

    # ------------------------- Queries ------------------------- #
    def find_book(self, book_id: str) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute(_BOOK_SELECT + " WHERE b.id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_books(self, query: Optional[str] = None) -> List[Book]:
        """All books, newest first, optionally filtered by title or author."""
        conn = get_db_connection()
        try:
            sql = _BOOK_SELECT
            params: tuple = ()
            q = (query or "").strip().lower()
            if q:
                sql += " WHERE lower(b.title) LIKE ? OR lower(b.author) LIKE ?"
                params = (f"%{q}%", f"%{q}%")
            sql += " ORDER BY b.created_at DESC, b.rowid DESC"
            rows = conn.execute(sql, params).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_loans(self, book_id: Optional[str] = None, open_only: bool = True) -> List[Loan]:
        conn = get_db_connection()
        try:
            clauses = []
            params: list = []
            if book_id:
                clauses.append("book_id = ?")
                params.append(book_id)
            if open_only:
                clauses.append("returned_at IS NULL")
            sql = "SELECT * FROM loans"
            if clauses:
                sql += " WHERE " + " AND ".join(clauses)
            sql += " ORDER BY borrowed_at DESC, id DESC"
            return [Loan.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def get_statistics(self) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            row = conn.execute("""
                SELECT COUNT(*) AS total_titles,
                       COALESCE(SUM(total_quantity), 0) AS total_copies,
                       COALESCE(SUM(available_quantity), 0) AS available_copies,
                       COUNT(DISTINCT author) AS unique_authors
                FROM books
            """).fetchone()
            open_loans = conn.execute("SELECT COUNT(*) FROM loans WHERE returned_at IS NULL").fetchone()[0]
            return {
                "total_titles": row["total_titles"],
                "total_copies": row["total_copies"],
                "available_copies": row["available_copies"],
                "borrowed_copies": row["total_copies"] - row["available_copies"],
                "open_loans": open_loans,
                "unique_authors": row["unique_authors"],
            }
        finally:
            conn.close()

    # ------------------------- Profiles ------------------------- #
    def upsert_profile(self, user_id: str, contact: BorrowerContact) -> Profile:
        """Create or refresh a borrower's contact details. The role is left alone."""
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO profiles (id, full_name, email, phone) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    full_name = excluded.full_name,
                    email = excluded.email,
                    phone = excluded.phone
                """,
                (user_id, contact.full_name, contact.email, contact.phone)
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_profile(user_id)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
            return Profile.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_role(self, user_id: Optional[str]) -> Optional[str]:
        """Role of an authenticated user; None when there is no identity.

        Users without a profile yet are members.
        """
        if not user_id or not user_id.strip():
            return None
        profile = self.get_profile(user_id.strip())
        return profile.role if profile else "member"

    def set_role(self, user_id: str, role: str) -> Profile:
        user_id = TextValidator.require(user_id, "User id")
        role = RoleValidator.validate_role(role)
        conn = get_db_connection()
        try:
            conn.execute(
                "INSERT INTO profiles (id, role) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET role = excluded.role",
                (user_id, role)
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Role updated: user={user_id}, role={role}")
        return self.get_profile(user_id)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _require_staff(role: Optional[str], action: str) -> None:
        if role is None or not str(role).strip():
            raise AuthRequiredError(f"You must be logged in to {action}.")
        if str(role).strip().lower() not in STAFF_ROLES:
            raise PermissionDeniedError(f"Only admins and librarians may {action}.")

    @staticmethod
    def _open_loan(conn: sqlite3.Connection, book_id: str, borrower_id: Optional[str],
                   exclude_id: Optional[int] = None) -> Optional[Loan]:
        sql = "SELECT * FROM loans WHERE book_id = ? AND returned_at IS NULL"
        params: list = [book_id]
        if borrower_id:
            sql += " AND borrower_id = ?"
            params.append(borrower_id)
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        sql += " ORDER BY borrowed_at DESC, id DESC LIMIT 1"
        row = conn.execute(sql, params).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def _reload(self, book_id: str) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found.")
        return book

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
