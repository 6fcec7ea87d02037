"""Checkout, return and reservation workflows.

Every operation that reads availability and then writes depends on
Database.atomic(): the check and the write commit in one SQLite transaction
that holds the write lock, so two requests racing for the last copy cannot
both succeed. The partial unique indexes on transactions and reservations
back up the one-open-record-per-(book, user) rules.
"""

import logging
import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from minilibrary.database import ACTIVE_LOANS_SQL, Database
from minilibrary.errors import (
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    ValidationFailedError,
)
from minilibrary.models import (
    Reservation,
    ReservationStatus,
    Transaction,
    TransactionStatus,
    User,
    to_db_time,
    utcnow,
)
from minilibrary.roles import STAFF, authorize

logger = logging.getLogger(__name__)

_TRANSACTION_SELECT = """
    SELECT t.*, b.title AS book_title, b.author AS book_author, b.cover_image AS book_cover_image
    FROM transactions t JOIN books b ON b.id = t.book_id
"""


def normalize_due_date(value: Union[date, datetime, str], now: Optional[datetime] = None) -> datetime:
    """Coerce a due date to an aware UTC datetime, rejecting dates before today.

    A bare date means the end of that day in UTC, so a loan due today is not
    overdue until the day is over.
    """
    now = now or utcnow()
    if isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        try:
            value = date.fromisoformat(text) if len(text) == 10 else datetime.fromisoformat(text)
        except ValueError:
            raise ValidationFailedError.for_field("due_date", "Due date must be an ISO 8601 date")
    if isinstance(value, datetime):
        due = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    elif isinstance(value, date):
        due = datetime.combine(value, time.max, tzinfo=timezone.utc)
    else:
        raise ValidationFailedError.for_field("due_date", "Due date is required")
    if due.astimezone(timezone.utc).date() < now.date():
        raise ValidationFailedError.for_field("due_date", "Due date cannot be in the past")
    return due.astimezone(timezone.utc)


class Circulation:
    """Lending workflow over the book copy counters."""

    def __init__(self, db: Database, loan_days: int = 14, hold_days: int = 7) -> None:
        self.db = db
        self.loan_days = loan_days
        self.hold_days = hold_days

    # ------------------------- Checkout / return ------------------------- #
    def checkout(self, book_id: int, actor: User, due_date=None, user_id: Optional[int] = None) -> Transaction:
        """Lend one copy of a book to `user_id` (defaults to the actor).

        Staff may check out on behalf of another user; members only for
        themselves.
        """
        target_id = user_id or actor.id
        authorize(actor, owner_id=target_id, min_role=STAFF)
        now = utcnow()
        due = normalize_due_date(due_date, now) if due_date is not None else now + timedelta(days=self.loan_days)

        with self.db.atomic() as conn:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (target_id,)).fetchone():
                raise NotFoundError("User not found")
            book = conn.execute("SELECT id, available_copies FROM books WHERE id = ?", (book_id,)).fetchone()
            if not book:
                raise NotFoundError("Book not found")
            if book["available_copies"] <= 0:
                raise PreconditionFailedError("No copies available")
            existing = conn.execute(
                "SELECT 1 FROM transactions WHERE book_id = ? AND user_id = ? AND status = 'ACTIVE'",
                (book_id, target_id),
            ).fetchone()
            if existing:
                raise ConflictError("User already has this book checked out")

            # Guarded decrement: the availability test and the write are one statement
            cur = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1, updated_at = ? "
                "WHERE id = ? AND available_copies > 0",
                (to_db_time(now), book_id),
            )
            if cur.rowcount != 1:
                raise PreconditionFailedError("No copies available")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO transactions (book_id, user_id, checkout_date, due_date, status, created_at)
                    VALUES (?, ?, ?, ?, 'ACTIVE', ?)
                    """,
                    (book_id, target_id, to_db_time(now), to_db_time(due), to_db_time(now)),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("User already has this book checked out") from e
            transaction_id = cur.lastrowid
            row = conn.execute(f"{_TRANSACTION_SELECT} WHERE t.id = ?", (transaction_id,)).fetchone()

        logger.info("Checkout: transaction=%s book=%s user=%s by=%s due=%s",
                    transaction_id, book_id, target_id, actor.id, due.date())
        return Transaction.from_row(row)

    def return_book(self, transaction_id: int, actor: User) -> Transaction:
        """Close an active checkout and put the copy back on the shelf.

        A second return of the same transaction is rejected, not ignored.
        """
        now = to_db_time(utcnow())
        with self.db.atomic() as conn:
            row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
            if not row:
                raise NotFoundError("Transaction not found")
            if row["status"] == TransactionStatus.RETURNED.value:
                raise ConflictError("Already returned")
            authorize(actor, owner_id=row["user_id"], min_role=STAFF)

            cur = conn.execute(
                "UPDATE transactions SET status = 'RETURNED', return_date = ? WHERE id = ? AND status = 'ACTIVE'",
                (now, transaction_id),
            )
            if cur.rowcount != 1:
                raise ConflictError("Already returned")
            # Recounted from the remaining active loans so a shrunken total stays consistent
            conn.execute(
                f"UPDATE books SET available_copies = MAX(0, total_copies - {ACTIVE_LOANS_SQL}), updated_at = ? "
                "WHERE id = ?",
                (now, row["book_id"]),
            )
            updated = conn.execute(f"{_TRANSACTION_SELECT} WHERE t.id = ?", (transaction_id,)).fetchone()

        logger.info("Return: transaction=%s book=%s by=%s", transaction_id, row["book_id"], actor.id)
        return Transaction.from_row(updated)

    def get_transaction(self, transaction_id: int, actor: User) -> Transaction:
        with self.db.connection() as conn:
            row = conn.execute(f"{_TRANSACTION_SELECT} WHERE t.id = ?", (transaction_id,)).fetchone()
        if not row:
            raise NotFoundError("Transaction not found")
        authorize(actor, owner_id=row["user_id"], min_role=STAFF)
        return Transaction.from_row(row)

    def list_transactions(self, actor: User, user_id: Optional[int] = None,
                          status: Optional[str] = None) -> List[Transaction]:
        """A user's checkouts, newest first. Other users' history needs staff."""
        target_id = user_id or actor.id
        authorize(actor, owner_id=target_id, min_role=STAFF)
        params: List[Any] = [target_id]
        where = "WHERE t.user_id = ?"
        if status:
            try:
                params.append(TransactionStatus(status.upper()).value)
            except ValueError:
                raise ValidationFailedError.for_field("status", "Allowed: ACTIVE, RETURNED")
            where += " AND t.status = ?"
        with self.db.connection() as conn:
            rows = conn.execute(f"{_TRANSACTION_SELECT} {where} ORDER BY t.created_at DESC, t.id DESC",
                                params).fetchall()
        return [Transaction.from_row(r) for r in rows]

    # ------------------------- Reservations ------------------------- #
    def reserve(self, book_id: int, actor: User, user_id: Optional[int] = None) -> Reservation:
        """Join the waiting list for a book that has no copy on the shelf."""
        target_id = user_id or actor.id
        authorize(actor, owner_id=target_id, min_role=STAFF)
        now = utcnow()
        with self.db.atomic() as conn:
            book = conn.execute("SELECT id, available_copies FROM books WHERE id = ?", (book_id,)).fetchone()
            if not book:
                raise NotFoundError("Book not found")
            if book["available_copies"] > 0:
                raise PreconditionFailedError("Book is available, no need to reserve")
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (target_id,)).fetchone():
                raise NotFoundError("User not found")

            # A lapsed hold for the same pair must not block a fresh one
            conn.execute(
                "UPDATE reservations SET status = 'EXPIRED' "
                "WHERE book_id = ? AND user_id = ? AND status = 'PENDING' AND expires_at <= ?",
                (book_id, target_id, to_db_time(now)),
            )
            existing = conn.execute(
                "SELECT 1 FROM reservations WHERE book_id = ? AND user_id = ? AND status = 'PENDING'",
                (book_id, target_id),
            ).fetchone()
            if existing:
                raise ConflictError("Already reserved")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO reservations (book_id, user_id, status, expires_at, created_at)
                    VALUES (?, ?, 'PENDING', ?, ?)
                    """,
                    (book_id, target_id, to_db_time(now + timedelta(days=self.hold_days)), to_db_time(now)),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("Already reserved") from e
            row = conn.execute("SELECT * FROM reservations WHERE id = ?", (cur.lastrowid,)).fetchone()

        logger.info("Reservation: id=%s book=%s user=%s", row["id"], book_id, target_id)
        return Reservation.from_row(row)

    def cancel_reservation(self, reservation_id: int, actor: User) -> Reservation:
        with self.db.atomic() as conn:
            row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
            if not row:
                raise NotFoundError("Reservation not found")
            if row["status"] != ReservationStatus.PENDING.value:
                raise ConflictError(f"Reservation is already {row['status'].lower()}")
            authorize(actor, owner_id=row["user_id"], min_role=STAFF)
            conn.execute("UPDATE reservations SET status = 'CANCELLED' WHERE id = ?", (reservation_id,))
            updated = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
        logger.info("Reservation cancelled: id=%s by=%s", reservation_id, actor.id)
        return Reservation.from_row(updated)

    def list_reservations(self, actor: User, user_id: Optional[int] = None) -> List[Reservation]:
        """A user's live (pending, unexpired) reservations, newest first."""
        target_id = user_id or actor.id
        authorize(actor, owner_id=target_id, min_role=STAFF)
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT r.*, b.title AS book_title, b.author AS book_author,
                       b.cover_image AS book_cover_image, b.available_copies AS book_available_copies
                FROM reservations r JOIN books b ON b.id = r.book_id
                WHERE r.user_id = ? AND r.status = 'PENDING' AND r.expires_at > ?
                ORDER BY r.created_at DESC, r.id DESC
            """, (target_id, to_db_time(utcnow()))).fetchall()
        return [Reservation.from_row(r) for r in rows]

    def expire_reservations(self, now: Optional[datetime] = None) -> int:
        """Mark every lapsed PENDING reservation EXPIRED; returns how many changed."""
        now = now or utcnow()
        with self.db.atomic() as conn:
            cur = conn.execute(
                "UPDATE reservations SET status = 'EXPIRED' WHERE status = 'PENDING' AND expires_at <= ?",
                (to_db_time(now),),
            )
            count = cur.rowcount
        if count:
            logger.info("Expired %s reservation(s)", count)
        return count

    def summary(self, actor: User) -> Dict[str, Any]:
        """Counts for the actor's own dashboard."""
        transactions = self.list_transactions(actor, status=TransactionStatus.ACTIVE.value)
        return {
            "active": len(transactions),
            "overdue": sum(1 for t in transactions if t.is_overdue()),
            "reservations": len(self.list_reservations(actor)),
        }
