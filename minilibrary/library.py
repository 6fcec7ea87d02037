import csv
import io
import logging
import secrets
import sqlite3
from typing import Any, Dict, List, Optional

from minilibrary.database import ACTIVE_LOANS_SQL, Database
from minilibrary.errors import ConflictError, NotFoundError, ValidationFailedError
from minilibrary.models import Book, Review, Transaction, User, to_db_time, utcnow
from minilibrary.roles import STAFF, Role, authorize

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {"created_at", "title", "author", "published_year"}
BOOK_FIELDS = (
    "title", "author", "isbn", "genre", "publisher", "published_year",
    "page_count", "language", "description", "cover_image",
)
OPTIONAL_TEXT_FIELDS = ("isbn", "genre", "publisher", "description", "cover_image")
CSV_HEADER = ["Title", "Author", "ISBN", "Genre", "Publisher", "Year", "Total Copies", "Available Copies"]

# Per-book review aggregate, joined onto catalog listings
_RATINGS_JOIN = """
    LEFT JOIN (
        SELECT book_id, AVG(rating) AS average_rating, COUNT(*) AS review_count
        FROM reviews GROUP BY book_id
    ) r ON r.book_id = b.id
"""


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _book_with_rating(row: sqlite3.Row) -> Dict[str, Any]:
    data = Book.from_row(row).to_dict()
    avg = row["average_rating"]
    # No reviews means no rating, not a rating of zero
    data["average_rating"] = round(avg, 2) if avg is not None else None
    data["review_count"] = row["review_count"] or 0
    return data


class Library:
    """Catalog, reviews, user administration and reporting over one Database."""

    def __init__(self, db: Database, page_size: int = 12, max_page_size: int = 100) -> None:
        self.db = db
        self.page_size = page_size
        self.max_page_size = max_page_size

    # ------------------------- Users ------------------------- #
    def create_user(self, name: str, email: str, role: Role = Role.MEMBER) -> User:
        """Register a user and issue the API key that identifies them."""
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name:
            raise ValidationFailedError.for_field("name", "Name is required")
        if "@" not in email:
            raise ValidationFailedError.for_field("email", "A valid email is required")
        api_key = secrets.token_urlsafe(32)
        now = to_db_time(utcnow())
        try:
            with self.db.atomic() as conn:
                cur = conn.execute(
                    "INSERT INTO users (name, email, role, api_key, created_at) VALUES (?, ?, ?, ?, ?)",
                    (name, email, Role(role).value, api_key, now),
                )
                user_id = cur.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"A user with email {email} already exists") from e
        logger.info("User created: id=%s email=%s role=%s", user_id, email, Role(role).value)
        return self.get_user(user_id)

    def find_user(self, user_id: int) -> Optional[User]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    def get_user(self, user_id: int) -> User:
        user = self.find_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),)).fetchone()
        return User.from_row(row) if row else None

    def authenticate(self, api_key: Optional[str]) -> Optional[User]:
        """Resolve an API key to its user, or None."""
        if not api_key:
            return None
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE api_key = ?", (api_key,)).fetchone()
        return User.from_row(row) if row else None

    def list_users(self, actor: User) -> List[Dict[str, Any]]:
        """All users with their transaction and review counts (admin only)."""
        authorize(actor, min_role=Role.ADMIN)
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT u.*,
                       (SELECT COUNT(*) FROM transactions t WHERE t.user_id = u.id) AS transaction_count,
                       (SELECT COUNT(*) FROM reviews rv WHERE rv.user_id = u.id) AS review_count
                FROM users u
                ORDER BY u.created_at DESC, u.id DESC
            """).fetchall()
        result = []
        for row in rows:
            data = User.from_row(row).to_dict()
            data["transaction_count"] = row["transaction_count"]
            data["review_count"] = row["review_count"]
            result.append(data)
        return result

    def update_role(self, actor: User, user_id: int, role: str) -> User:
        authorize(actor, min_role=Role.ADMIN)
        try:
            new_role = Role.parse(role)
        except ValueError:
            raise ValidationFailedError.for_field("role", "Invalid role; expected ADMIN, LIBRARIAN or MEMBER")
        with self.db.atomic() as conn:
            cur = conn.execute("UPDATE users SET role = ? WHERE id = ?", (new_role.value, user_id))
            if cur.rowcount == 0:
                raise NotFoundError("User not found")
        logger.info("Role changed: user=%s role=%s by=%s", user_id, new_role.value, actor.id)
        return self.get_user(user_id)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, book: Book, actor: User) -> Book:
        """Add a new title. Every copy starts available."""
        authorize(actor, min_role=STAFF)
        for required in ("title", "author"):
            if not getattr(book, required):
                raise ValidationFailedError.for_field(required, f"{required.capitalize()} is required")
        if book.total_copies < 1:
            raise ValidationFailedError.for_field("total_copies", "At least one copy is required")
        now = to_db_time(utcnow())
        with self.db.atomic() as conn:
            cur = conn.execute(
                """
                INSERT INTO books (
                    title, author, isbn, genre, publisher, published_year, page_count,
                    language, description, cover_image, total_copies, available_copies,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    book.title, book.author, book.isbn, book.genre, book.publisher,
                    book.published_year, book.page_count, book.language, book.description,
                    book.cover_image, book.total_copies, book.total_copies, now, now,
                ),
            )
            book_id = cur.lastrowid
        logger.info("Book added: id=%s title=%r copies=%s", book_id, book.title, book.total_copies)
        return self.get_book(book_id)

    def find_book(self, book_id: int) -> Optional[Book]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_row(row) if row else None

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        return book

    def get_book_detail(self, book_id: int) -> Dict[str, Any]:
        """Book with its reviews, active checkouts and usage counts."""
        with self.db.connection() as conn:
            row = conn.execute(f"SELECT b.*, r.average_rating, r.review_count FROM books b {_RATINGS_JOIN} WHERE b.id = ?",
                               (book_id,)).fetchone()
            if not row:
                raise NotFoundError("Book not found")
            review_rows = conn.execute("""
                SELECT rv.*, u.name AS user_name
                FROM reviews rv JOIN users u ON u.id = rv.user_id
                WHERE rv.book_id = ?
                ORDER BY rv.created_at DESC, rv.id DESC
            """, (book_id,)).fetchall()
            active_rows = conn.execute("""
                SELECT t.*, u.name AS user_name
                FROM transactions t JOIN users u ON u.id = t.user_id
                WHERE t.book_id = ? AND t.status = 'ACTIVE'
                ORDER BY t.due_date
            """, (book_id,)).fetchall()
            counts = conn.execute("""
                SELECT (SELECT COUNT(*) FROM transactions WHERE book_id = ?) AS transaction_count,
                       (SELECT COUNT(*) FROM reservations WHERE book_id = ?) AS reservation_count
            """, (book_id, book_id)).fetchone()

        data = _book_with_rating(row)
        data["reviews"] = [Review.from_row(r).to_dict() for r in review_rows]
        data["active_transactions"] = [Transaction.from_row(t).to_dict() for t in active_rows]
        data["transaction_count"] = counts["transaction_count"]
        data["reservation_count"] = counts["reservation_count"]
        return data

    def list_books(self, query: Optional[str] = None, genre: Optional[str] = None, available: bool = False,
                   page: int = 1, limit: Optional[int] = None, sort: str = "created_at",
                   order: str = "desc") -> Dict[str, Any]:
        """Paginated catalog listing filtered by free text, genre and availability."""
        if sort not in SORTABLE_FIELDS:
            raise ValidationFailedError.for_field("sort", f"Allowed: {', '.join(sorted(SORTABLE_FIELDS))}")
        if order not in ("asc", "desc"):
            raise ValidationFailedError.for_field("order", "Allowed: asc, desc")
        limit = max(1, min(limit or self.page_size, self.max_page_size))
        page = max(1, page)

        clauses: List[str] = []
        params: List[Any] = []
        if query:
            pattern = f"%{_escape_like(query.strip())}%"
            clauses.append(
                "(b.title LIKE ? ESCAPE '\\' OR b.author LIKE ? ESCAPE '\\' "
                "OR b.isbn LIKE ? ESCAPE '\\' OR b.genre LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 4)
        if genre:
            clauses.append("b.genre = ? COLLATE NOCASE")
            params.append(genre.strip())
        if available:
            clauses.append("b.available_copies > 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.db.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM books b {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT b.*, r.average_rating, r.review_count
                FROM books b {_RATINGS_JOIN}
                {where}
                ORDER BY b.{sort} {order.upper()}, b.id {order.upper()}
                LIMIT ? OFFSET ?
                """,
                params + [limit, (page - 1) * limit],
            ).fetchall()

        return {
            "books": [_book_with_rating(r) for r in rows],
            "total": total,
            "page": page,
            "total_pages": (total + limit - 1) // limit,
        }

    def search_books(self, *, text: Optional[str] = None, title: Optional[str] = None,
                     author: Optional[str] = None, genre: Optional[str] = None,
                     available_only: bool = False, text_fields=("title", "author"),
                     limit: int = 20) -> List[Dict[str, Any]]:
        """Substring search used by the assistant; each given filter must match."""
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (("title", title), ("author", author), ("genre", genre)):
            if value:
                clauses.append(f"b.{column} LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(value.strip())}%")
        if text:
            pattern = f"%{_escape_like(text.strip())}%"
            clauses.append("(" + " OR ".join(f"b.{c} LIKE ? ESCAPE '\\'" for c in text_fields) + ")")
            params.extend([pattern] * len(text_fields))
        if available_only:
            clauses.append("b.available_copies > 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT b.*, r.average_rating, r.review_count FROM books b {_RATINGS_JOIN} {where} "
                f"ORDER BY b.title LIMIT ?",
                params + [limit],
            ).fetchall()
        return [_book_with_rating(r) for r in rows]

    def update_book(self, book_id: int, changes: Dict[str, Any], actor: User) -> Book:
        """Staff edit of bibliographic data and the copy count.

        Client-supplied available copies are ignored. When total_copies
        changes, availability becomes the new total minus the active loans,
        flooring at zero, in the same statement that writes the total.
        Blank optional text clears the field, as on creation.
        """
        authorize(actor, min_role=STAFF)
        fields = {k: v for k, v in changes.items() if k in BOOK_FIELDS}
        for required in ("title", "author"):
            if required in fields and not (fields[required] or "").strip():
                raise ValidationFailedError.for_field(required, f"{required.capitalize()} is required")
            if required in fields:
                fields[required] = fields[required].strip()
        for name in OPTIONAL_TEXT_FIELDS:
            if name in fields:
                fields[name] = (fields[name] or "").strip() or None
        if "language" in fields:
            fields["language"] = (fields["language"] or "").strip() or "English"

        assignments = [f"{name} = ?" for name in fields]
        params: List[Any] = list(fields.values())
        new_total = changes.get("total_copies")
        if new_total is not None:
            if new_total < 1:
                raise ValidationFailedError.for_field("total_copies", "At least one copy is required")
            assignments.append(f"available_copies = MAX(0, ? - {ACTIVE_LOANS_SQL})")
            assignments.append("total_copies = ?")
            params.extend([new_total, new_total])
        assignments.append("updated_at = ?")
        params.append(to_db_time(utcnow()))

        with self.db.atomic() as conn:
            cur = conn.execute(f"UPDATE books SET {', '.join(assignments)} WHERE id = ?", params + [book_id])
            if cur.rowcount == 0:
                raise NotFoundError("Book not found")
        logger.info("Book updated: id=%s fields=%s by=%s", book_id, sorted(changes), actor.id)
        return self.get_book(book_id)

    def remove_book(self, book_id: int, actor: User) -> None:
        authorize(actor, min_role=STAFF)
        with self.db.atomic() as conn:
            cur = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            if cur.rowcount == 0:
                raise NotFoundError("Book not found")
        logger.info("Book removed: id=%s by=%s", book_id, actor.id)

    # ------------------------- Reviews ------------------------- #
    def submit_review(self, book_id: int, actor: User, rating: int, comment: Optional[str] = None) -> Review:
        """Create or replace the actor's review of a book."""
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ValidationFailedError.for_field("rating", "Rating must be an integer between 1 and 5")
        now = to_db_time(utcnow())
        with self.db.atomic() as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFoundError("Book not found")
            conn.execute(
                """
                INSERT INTO reviews (book_id, user_id, rating, comment, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (book_id, user_id) DO UPDATE SET
                    rating = excluded.rating,
                    comment = excluded.comment,
                    updated_at = excluded.updated_at
                """,
                (book_id, actor.id, rating, comment, now, now),
            )
            row = conn.execute("""
                SELECT rv.*, u.name AS user_name FROM reviews rv JOIN users u ON u.id = rv.user_id
                WHERE rv.book_id = ? AND rv.user_id = ?
            """, (book_id, actor.id)).fetchone()
        logger.info("Review saved: book=%s user=%s rating=%s", book_id, actor.id, rating)
        return Review.from_row(row)

    def list_reviews(self, book_id: int) -> List[Review]:
        self.get_book(book_id)
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT rv.*, u.name AS user_name FROM reviews rv JOIN users u ON u.id = rv.user_id
                WHERE rv.book_id = ?
                ORDER BY rv.created_at DESC, rv.id DESC
            """, (book_id,)).fetchall()
        return [Review.from_row(r) for r in rows]

    def get_rating(self, book_id: int) -> Dict[str, Any]:
        """Mean rating and review count; average is None when there are no reviews."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT AVG(rating) AS avg_rating, COUNT(*) AS review_count FROM reviews WHERE book_id = ?",
                               (book_id,)).fetchone()
        avg = row["avg_rating"]
        return {
            "book_id": book_id,
            "average_rating": round(avg, 2) if avg is not None else None,
            "review_count": row["review_count"],
        }

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self, now=None) -> Dict[str, Any]:
        """Dashboard figures."""
        now = now or utcnow()
        now_s = to_db_time(now)
        # First day of the month, five months back: six calendar months in total
        year, month = now.year, now.month - 5
        while month < 1:
            month += 12
            year -= 1
        since = to_db_time(now.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0))

        with self.db.connection() as conn:
            total_books = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            total_users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            active = conn.execute("SELECT COUNT(*) FROM transactions WHERE status = 'ACTIVE'").fetchone()[0]
            overdue = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = 'ACTIVE' AND due_date < ?", (now_s,)
            ).fetchone()[0]
            recent = conn.execute("""
                SELECT t.*, b.title AS book_title, u.name AS user_name
                FROM transactions t
                JOIN books b ON b.id = t.book_id
                JOIN users u ON u.id = t.user_id
                ORDER BY t.created_at DESC, t.id DESC
                LIMIT 10
            """).fetchall()
            genres = conn.execute("""
                SELECT genre, COUNT(*) AS count FROM books
                WHERE genre IS NOT NULL
                GROUP BY genre ORDER BY count DESC, genre LIMIT 8
            """).fetchall()
            monthly = conn.execute("""
                SELECT substr(checkout_date, 1, 7) AS month, COUNT(*) AS count
                FROM transactions WHERE checkout_date >= ?
                GROUP BY month ORDER BY month
            """, (since,)).fetchall()

        return {
            "total_books": total_books,
            "total_users": total_users,
            "active_checkouts": active,
            "overdue_count": overdue,
            "recent_transactions": [Transaction.from_row(r).to_dict() for r in recent],
            "genre_counts": [{"genre": g["genre"], "count": g["count"]} for g in genres],
            "monthly_checkouts": [{"month": m["month"], "count": m["count"]} for m in monthly],
        }

    def export_csv(self) -> str:
        """Inventory as CSV text."""
        with self.db.connection() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY title, id").fetchall()
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for row in rows:
            book = Book.from_row(row)
            writer.writerow([
                book.title, book.author, book.isbn or "", book.genre or "", book.publisher or "",
                book.published_year or "", book.total_copies, book.available_copies,
            ])
        return output.getvalue()

    # ------------------------- Assistant context ------------------------- #
    def catalog_snapshot(self, limit: int = 100, available_only: bool = False) -> List[Book]:
        where = "WHERE available_copies > 0" if available_only else ""
        with self.db.connection() as conn:
            rows = conn.execute(f"SELECT * FROM books {where} ORDER BY title, id LIMIT ?", (limit,)).fetchall()
        return [Book.from_row(r) for r in rows]

    def reading_history(self, user_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT b.title, b.author, b.genre
                FROM transactions t JOIN books b ON b.id = t.book_id
                WHERE t.user_id = ?
                ORDER BY t.created_at DESC, t.id DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()
        return [dict(r) for r in rows]

