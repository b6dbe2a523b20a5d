from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum


class BookState(Enum):
    """Stock state of a title."""
    AVAILABLE = "available"
    PARTIALLY_BORROWED = "partially_borrowed"
    FULLY_BORROWED = "fully_borrowed"


@dataclass
class BorrowerContact:
    """Contact details a borrower must supply before taking a copy."""
    full_name: str
    email: str
    phone: str


@dataclass
class Profile:
    id: str
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str = "member"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
        }

    @staticmethod
    def from_dict(data: dict) -> "Profile":
        return Profile(
            id=data["id"],
            full_name=data.get("full_name"),
            email=data.get("email"),
            phone=data.get("phone"),
            role=data.get("role") or "member",
        )


@dataclass
class Loan:
    """One copy of a book held by one borrower."""
    id: int
    book_id: str
    borrower_id: str
    borrowed_at: str
    returned_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "borrowed_at": self.borrowed_at,
            "returned_at": self.returned_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data["id"],
            book_id=data["book_id"],
            borrower_id=data["borrower_id"],
            borrowed_at=data["borrowed_at"],
            returned_at=data.get("returned_at"),
        )


class Book:
    """A title in the catalog together with its stock counters."""

    def __init__(self, id: str, title: str, author: str, total_quantity: int = 1,
                 available_quantity: int | None = None, is_borrowed: bool = False,
                 borrowed_by: str | None = None, borrowed_at: str | None = None,
                 ai_summary: str | None = None, ai_tags: list | None = None,
                 created_at: str | None = None, borrower: Profile | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.total_quantity = total_quantity
        self.available_quantity = total_quantity if available_quantity is None else available_quantity
        self.is_borrowed = bool(is_borrowed)
        self.borrowed_by = borrowed_by
        self.borrowed_at = borrowed_at
        self.ai_summary = ai_summary
        self.ai_tags = list(ai_tags or [])
        self.created_at = created_at
        # Read-joined from profiles for display only
        self.borrower = borrower

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_quantity}/{self.total_quantity} available)"

    @property
    def borrowed_quantity(self) -> int:
        return max(self.total_quantity - self.available_quantity, 0)

    @property
    def state(self) -> BookState:
        if self.available_quantity >= self.total_quantity:
            return BookState.AVAILABLE
        if self.available_quantity <= 0:
            return BookState.FULLY_BORROWED
        return BookState.PARTIALLY_BORROWED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "is_borrowed": self.is_borrowed,
            "borrowed_by": self.borrowed_by,
            "borrowed_at": self.borrowed_at,
            "ai_summary": self.ai_summary,
            "ai_tags": self.ai_tags,
            "total_quantity": self.total_quantity,
            "available_quantity": self.available_quantity,
            "borrowed_quantity": self.borrowed_quantity,
            "state": self.state.value,
            "created_at": self.created_at,
            "borrower": self.borrower.to_dict() if self.borrower else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # ai_tags is stored as a JSON string in SQLite
        tags = data.get("ai_tags")
        if isinstance(tags, str):
            try:
                tags = json.loads(tags)
            except json.JSONDecodeError:
                tags = [tags] if tags else []

        borrower = None
        if data.get("borrower_id"):
            borrower = Profile(
                id=data["borrower_id"],
                full_name=data.get("borrower_full_name"),
                email=data.get("borrower_email"),
                phone=data.get("borrower_phone"),
                role=data.get("borrower_role") or "member",
            )

        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            total_quantity=data.get("total_quantity") or 1,
            available_quantity=data.get("available_quantity"),
            is_borrowed=data.get("is_borrowed") or False,
            borrowed_by=data.get("borrowed_by"),
            borrowed_at=data.get("borrowed_at"),
            ai_summary=data.get("ai_summary"),
            ai_tags=tags,
            created_at=data.get("created_at"),
            borrower=borrower,
        )
