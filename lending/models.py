"""Data models for the lending backend.

Users, Books and Borrowings are plain dataclasses mirroring the rows of the
``users``, ``books`` and ``borrowings`` tables. ``from_row`` builds a model from
an ``sqlite3.Row`` (or any mapping) and ``to_dict`` produces a JSON friendly
dictionary for the API and CLI layers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from lending.database import from_db_timestamp, to_db_timestamp


class UserRole(str, Enum):
    MEMBER = "member"
    STAFF = "staff"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class BookStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    MAINTENANCE = "maintenance"


class BorrowingStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


# Statuses that hold a copy of the book out of inventory
ACTIVE_STATUSES = (BorrowingStatus.BORROWED, BorrowingStatus.OVERDUE)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class User:
    """A library patron or staff member."""
    username: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole = UserRole.MEMBER
    status: UserStatus = UserStatus.ACTIVE
    user_id: Optional[int] = None
    registration_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "role": self.role.value,
            "status": self.status.value,
            "registration_date": _iso(self.registration_date),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            user_id=row["user_id"],
            username=row["username"],
            email=row["email"],
            full_name=row["full_name"],
            phone=row["phone"],
            role=UserRole(row["role"]),
            status=UserStatus(row["status"]),
            registration_date=from_db_timestamp(row["registration_date"]),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )


@dataclass
class Book:
    """A catalog title with a fixed number of physical copies."""
    isbn: str
    title: str
    author: str
    total_copies: int = 1
    available_copies: Optional[int] = None
    publication_year: Optional[int] = None
    language: Optional[str] = None
    location: Optional[str] = None
    status: BookStatus = BookStatus.AVAILABLE
    book_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.isbn = self.isbn.strip()
        self.title = self.title.strip()
        self.author = self.author.strip()
        # A new book starts with every copy on the shelf
        if self.available_copies is None:
            self.available_copies = self.total_copies

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "book_id": self.book_id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "publication_year": self.publication_year,
            "language": self.language,
            "location": self.location,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            book_id=row["book_id"],
            isbn=row["isbn"],
            title=row["title"],
            author=row["author"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            publication_year=row["publication_year"],
            language=row["language"],
            location=row["location"],
            status=BookStatus(row["status"]),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )


@dataclass
class Borrowing:
    """One loan of one book to one user."""
    user_id: int
    book_id: int
    borrow_date: datetime
    due_date: datetime
    status: BorrowingStatus = BorrowingStatus.BORROWED
    return_date: Optional[datetime] = None
    fine_amount: Decimal = Decimal("0.00")
    fine_paid: bool = False
    notes: Optional[str] = None
    borrowing_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "borrowing_id": self.borrowing_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": _iso(self.borrow_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status.value,
            "fine_amount": str(self.fine_amount),
            "fine_paid": self.fine_paid,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_insert_params(self) -> tuple:
        return (
            self.user_id,
            self.book_id,
            to_db_timestamp(self.borrow_date),
            to_db_timestamp(self.due_date),
            to_db_timestamp(self.return_date),
            self.status.value,
            str(self.fine_amount),
            int(self.fine_paid),
            self.notes,
        )

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Borrowing":
        return Borrowing(
            borrowing_id=row["borrowing_id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrow_date=from_db_timestamp(row["borrow_date"]),
            due_date=from_db_timestamp(row["due_date"]),
            return_date=from_db_timestamp(row["return_date"]),
            status=BorrowingStatus(row["status"]),
            fine_amount=Decimal(row["fine_amount"]),
            fine_paid=bool(row["fine_paid"]),
            notes=row["notes"],
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )
