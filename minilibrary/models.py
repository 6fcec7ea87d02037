from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from minilibrary.roles import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize to a fixed-width UTC ISO string so SQL text comparisons order correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class TransactionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Book:
    """Represents a single catalog title and its copy counters."""

    def __init__(self, title: str, author: str, id: int | None = None, isbn: str | None = None,
                 genre: str | None = None, publisher: str | None = None, published_year: int | None = None,
                 page_count: int | None = None, language: str | None = None, description: str | None = None,
                 cover_image: str | None = None, total_copies: int = 1, available_copies: int | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn or None
        self.genre = genre or None
        self.publisher = publisher or None
        self.published_year = published_year
        self.page_count = page_count
        self.language = language or "English"
        self.description = description or None
        self.cover_image = cover_image or None
        self.total_copies = total_copies
        # A new book starts with every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def checked_out(self) -> int:
        return self.total_copies - self.available_copies

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "publisher": self.publisher,
            "published_year": self.published_year,
            "page_count": self.page_count,
            "language": self.language,
            "description": self.description,
            "cover_image": self.cover_image,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Any) -> "Book":
        data = dict(row)
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            genre=data.get("genre"),
            publisher=data.get("publisher"),
            published_year=data.get("published_year"),
            page_count=data.get("page_count"),
            language=data.get("language"),
            description=data.get("description"),
            cover_image=data.get("cover_image"),
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            created_at=from_db_time(data.get("created_at")),
            updated_at=from_db_time(data.get("updated_at")),
        )


@dataclass
class User:
    id: int
    name: str
    email: str
    role: Role = Role.MEMBER
    api_key: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self, include_api_key: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "created_at": _iso(self.created_at),
        }
        if include_api_key:
            data["api_key"] = self.api_key
        return data

    @staticmethod
    def from_row(row: Any) -> "User":
        data = dict(row)
        return User(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            role=Role(data["role"]),
            api_key=data.get("api_key"),
            created_at=from_db_time(data.get("created_at")),
        )


@dataclass
class Transaction:
    """A checkout record. RETURNED is terminal."""
    id: int
    book_id: int
    user_id: int
    checkout_date: datetime
    due_date: datetime
    status: TransactionStatus = TransactionStatus.ACTIVE
    return_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    # Joined, read-only context for listings
    book: Dict[str, Any] = field(default_factory=dict)
    user: Dict[str, Any] = field(default_factory=dict)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status == TransactionStatus.ACTIVE and now > self.due_date

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "checkout_date": _iso(self.checkout_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status.value,
            "overdue": self.is_overdue(),
            "created_at": _iso(self.created_at),
        }
        if self.book:
            data["book"] = self.book
        if self.user:
            data["user"] = self.user
        return data

    @staticmethod
    def from_row(row: Any) -> "Transaction":
        data = dict(row)
        book = {k[5:]: data[k] for k in data if k.startswith("book_") and k != "book_id"}
        user = {k[5:]: data[k] for k in data if k.startswith("user_") and k != "user_id"}
        if book:
            book["id"] = data["book_id"]
        if user:
            user["id"] = data["user_id"]
        return Transaction(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            checkout_date=from_db_time(data["checkout_date"]),
            due_date=from_db_time(data["due_date"]),
            status=TransactionStatus(data["status"]),
            return_date=from_db_time(data.get("return_date")),
            created_at=from_db_time(data.get("created_at")),
            book=book,
            user=user,
        )


@dataclass
class Reservation:
    """A waiting-list entry; nothing promotes it to a checkout."""
    id: int
    book_id: int
    user_id: int
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: Optional[datetime] = None
    book: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
        }
        if self.book:
            data["book"] = self.book
        return data

    @staticmethod
    def from_row(row: Any) -> "Reservation":
        data = dict(row)
        book = {k[5:]: data[k] for k in data if k.startswith("book_") and k != "book_id"}
        if book:
            book["id"] = data["book_id"]
        return Reservation(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            expires_at=from_db_time(data["expires_at"]),
            status=ReservationStatus(data["status"]),
            created_at=from_db_time(data.get("created_at")),
            book=book,
        )


@dataclass
class Review:
    id: int
    book_id: int
    user_id: int
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "rating": self.rating,
            "comment": self.comment,
            "user_name": self.user_name,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: Any) -> "Review":
        data = dict(row)
        return Review(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            rating=data["rating"],
            comment=data.get("comment"),
            created_at=from_db_time(data.get("created_at")),
            updated_at=from_db_time(data.get("updated_at")),
            user_name=data.get("user_name"),
        )
