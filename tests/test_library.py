import csv
import io

import pytest

from minilibrary.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    ValidationFailedError,
)
from minilibrary.library import CSV_HEADER
from minilibrary.models import Book, utcnow
from minilibrary.roles import Role


# ------------------------- Users ------------------------- #
def test_create_user_issues_api_key(library):
    user = library.create_user("  Grace Hopper ", "Grace@Example.com")
    assert user.name == "Grace Hopper"
    assert user.email == "grace@example.com"
    assert user.role == Role.MEMBER
    assert user.api_key
    assert library.authenticate(user.api_key).id == user.id
    assert library.authenticate("not-a-key") is None
    assert library.authenticate(None) is None


def test_create_user_rejects_duplicates_and_bad_input(library, member):
    with pytest.raises(ConflictError):
        library.create_user("Someone", "MARY@example.com")
    with pytest.raises(ValidationFailedError):
        library.create_user("", "empty@example.com")
    with pytest.raises(ValidationFailedError):
        library.create_user("No At", "no-at-sign")


def test_update_role_is_admin_only(library, admin, librarian, member):
    with pytest.raises(ForbiddenError):
        library.update_role(librarian, member.id, "LIBRARIAN")

    updated = library.update_role(admin, member.id, "LIBRARIAN")
    assert updated.role == Role.LIBRARIAN

    with pytest.raises(ValidationFailedError) as excinfo:
        library.update_role(admin, member.id, "OWNER")
    assert excinfo.value.details == [{"field": "role", "message": "Invalid role; expected ADMIN, LIBRARIAN or MEMBER"}]
    with pytest.raises(NotFoundError):
        library.update_role(admin, 9999, "MEMBER")


def test_list_users_counts(library, circulation, make_book, admin, member):
    book = make_book()
    circulation.checkout(book.id, member)
    library.submit_review(book.id, member, 5)

    with pytest.raises(ForbiddenError):
        library.list_users(member)
    users = {u["email"]: u for u in library.list_users(admin)}
    assert users["mary@example.com"]["transaction_count"] == 1
    assert users["mary@example.com"]["review_count"] == 1
    assert "api_key" not in users["mary@example.com"]


# ------------------------- Catalog ------------------------- #
def test_add_book_starts_fully_available(library, librarian):
    book = library.add_book(Book("Ulysses", "James Joyce", isbn="9780199535675", total_copies=3), librarian)
    assert book.id is not None
    assert book.total_copies == 3
    assert book.available_copies == 3
    assert book.language == "English"


def test_add_book_ignores_supplied_availability(library, librarian):
    book = library.add_book(Book("Ulysses", "James Joyce", total_copies=2, available_copies=0), librarian)
    assert book.available_copies == 2


def test_add_book_requires_staff(library, member):
    with pytest.raises(ForbiddenError):
        library.add_book(Book("Ulysses", "James Joyce"), member)


def test_list_books_filters_and_pagination(library, make_book):
    make_book(title="Dune", author="Frank Herbert", genre="Science Fiction")
    make_book(title="Emma", author="Jane Austen", genre="Classic")
    make_book(title="Neuromancer", author="William Gibson", genre="science fiction", isbn="9780441569595")

    result = library.list_books(genre="SCIENCE FICTION", sort="title", order="asc")
    assert [b["title"] for b in result["books"]] == ["Dune", "Neuromancer"]

    assert [b["title"] for b in library.list_books(query="austen")["books"]] == ["Emma"]
    assert [b["title"] for b in library.list_books(query="0441569")["books"]] == ["Neuromancer"]

    page = library.list_books(page=2, limit=2, sort="title", order="asc")
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert [b["title"] for b in page["books"]] == ["Neuromancer"]


def test_list_books_escapes_like_wildcards(make_book, library):
    make_book(title="100% Wolf", author="Jayne Lyons")
    make_book(title="1000 Cranes", author="Someone")
    assert [b["title"] for b in library.list_books(query="100%")["books"]] == ["100% Wolf"]


def test_list_books_available_only(library, circulation, make_book, member):
    taken = make_book(title="Taken", author="A")
    make_book(title="Free", author="B")
    circulation.checkout(taken.id, member)
    assert [b["title"] for b in library.list_books(available=True)["books"]] == ["Free"]


def test_list_books_rejects_unknown_sort(library):
    with pytest.raises(ValidationFailedError):
        library.list_books(sort="isbn; DROP TABLE books")
    with pytest.raises(ValidationFailedError):
        library.list_books(order="sideways")


def test_edit_shrinking_total_rederives_availability(library, circulation, make_book, member, other_member, librarian):
    book = make_book(copies=3)
    circulation.checkout(book.id, member)
    circulation.checkout(book.id, other_member)
    assert library.get_book(book.id).available_copies == 1

    edited = library.update_book(book.id, {"total_copies": 1, "available_copies": 1}, librarian)

    assert edited.total_copies == 1
    assert edited.available_copies == 0


def test_edit_growing_total_keeps_lent_copies(library, circulation, make_book, member, librarian):
    book = make_book(copies=2)
    circulation.checkout(book.id, member)
    edited = library.update_book(book.id, {"total_copies": 5, "title": " Dune Messiah "}, librarian)
    assert edited.available_copies == 4
    assert edited.title == "Dune Messiah"


def test_return_after_shrink_never_exceeds_total(library, circulation, make_book, member, other_member, librarian):
    book = make_book(copies=2)
    first = circulation.checkout(book.id, member)
    second = circulation.checkout(book.id, other_member)
    library.update_book(book.id, {"total_copies": 1}, librarian)

    circulation.return_book(first.id, member)
    circulation.return_book(second.id, other_member)

    refreshed = library.get_book(book.id)
    assert 0 <= refreshed.available_copies <= refreshed.total_copies == 1


def test_shrink_then_grow_counts_active_loans(library, circulation, make_book, member, other_member, librarian):
    book = make_book(copies=3)
    circulation.checkout(book.id, member)
    circulation.checkout(book.id, other_member)

    assert library.update_book(book.id, {"total_copies": 1}, librarian).available_copies == 0
    regrown = library.update_book(book.id, {"total_copies": 3}, librarian)

    assert regrown.total_copies == 3
    assert regrown.available_copies == 1


def test_return_after_shrink_keeps_book_unavailable(library, circulation, make_book, member, other_member, librarian):
    book = make_book(copies=2)
    first = circulation.checkout(book.id, member)
    second = circulation.checkout(book.id, other_member)
    library.update_book(book.id, {"total_copies": 1}, librarian)

    circulation.return_book(first.id, member)
    assert library.get_book(book.id).available_copies == 0
    latecomer = library.create_user("Lucy Late", "lucy@example.com")
    with pytest.raises(PreconditionFailedError):
        circulation.checkout(book.id, latecomer)

    circulation.return_book(second.id, other_member)
    assert library.get_book(book.id).available_copies == 1


def test_edit_blank_optional_text_clears_field(library, make_book, librarian):
    book = make_book(isbn="9780441013593", genre="Science Fiction", language="French")
    edited = library.update_book(book.id, {"isbn": "", "genre": "  ", "language": ""}, librarian)
    assert edited.isbn is None
    assert edited.genre is None
    assert edited.language == "English"


def test_edit_validation_and_permissions(library, make_book, member, librarian):
    book = make_book()
    with pytest.raises(ForbiddenError):
        library.update_book(book.id, {"title": "New"}, member)
    with pytest.raises(ValidationFailedError):
        library.update_book(book.id, {"title": "  "}, librarian)
    with pytest.raises(ValidationFailedError):
        library.update_book(book.id, {"total_copies": 0}, librarian)
    with pytest.raises(NotFoundError):
        library.update_book(9999, {"title": "New"}, librarian)


def test_remove_book_cascades(library, circulation, make_book, member, librarian):
    book = make_book()
    transaction = circulation.checkout(book.id, member)
    library.submit_review(book.id, member, 4)

    library.remove_book(book.id, librarian)

    assert library.find_book(book.id) is None
    with pytest.raises(NotFoundError):
        circulation.get_transaction(transaction.id, librarian)
    with pytest.raises(NotFoundError):
        library.remove_book(book.id, librarian)


def test_book_detail(library, circulation, make_book, member, other_member):
    book = make_book(copies=2)
    circulation.checkout(book.id, member)
    library.submit_review(book.id, member, 4, "Great")
    library.submit_review(book.id, other_member, 5)

    detail = library.get_book_detail(book.id)

    assert detail["average_rating"] == 4.5
    assert detail["review_count"] == 2
    assert [r["user_name"] for r in detail["reviews"]] == ["Oscar Other", "Mary Member"]
    assert detail["active_transactions"][0]["user"]["name"] == "Mary Member"
    assert detail["transaction_count"] == 1
    assert detail["reservation_count"] == 0
    with pytest.raises(NotFoundError):
        library.get_book_detail(9999)


# ------------------------- Reviews ------------------------- #
def test_review_upsert_keeps_one_row(library, make_book, member):
    book = make_book()
    library.submit_review(book.id, member, 4)
    updated = library.submit_review(book.id, member, 2, "changed my mind")

    reviews = library.list_reviews(book.id)
    assert len(reviews) == 1
    assert reviews[0].rating == 2
    assert reviews[0].comment == "changed my mind"
    assert updated.user_name == "Mary Member"
    assert library.get_rating(book.id)["average_rating"] == 2


def test_rating_is_none_without_reviews(library, make_book):
    book = make_book()
    assert library.get_rating(book.id) == {"book_id": book.id, "average_rating": None, "review_count": 0}
    assert library.list_books()["books"][0]["average_rating"] is None


def test_review_validation(library, make_book, member):
    book = make_book()
    for bad in (0, 6, 3.5, True, "5"):
        with pytest.raises(ValidationFailedError):
            library.submit_review(book.id, member, bad)
    with pytest.raises(NotFoundError):
        library.submit_review(9999, member, 3)


# ------------------------- Reporting ------------------------- #
def test_statistics(library, circulation, make_book, member, other_member):
    dune = make_book(genre="Science Fiction")
    make_book(title="Emma", author="Jane Austen", genre="Classic")
    make_book(title="Foundation", author="Isaac Asimov", genre="Science Fiction")
    circulation.checkout(dune.id, member)

    stats = library.get_statistics()

    assert stats["total_books"] == 3
    assert stats["total_users"] == 3  # librarian from make_book plus two members
    assert stats["active_checkouts"] == 1
    assert stats["overdue_count"] == 0
    assert stats["recent_transactions"][0]["book"]["title"] == "Dune"
    assert stats["genre_counts"][0] == {"genre": "Science Fiction", "count": 2}
    assert stats["monthly_checkouts"] == [{"month": utcnow().strftime("%Y-%m"), "count": 1}]


def test_export_csv_quotes_fields(library, make_book):
    make_book(title="Hello, World", author='Ann "Quote" Author', isbn="123", copies=2)

    rows = list(csv.reader(io.StringIO(library.export_csv())))

    assert rows[0] == CSV_HEADER
    assert rows[1] == ["Hello, World", 'Ann "Quote" Author', "123", "", "", "", "2", "2"]
    assert library.export_csv().splitlines()[0] == "Title,Author,ISBN,Genre,Publisher,Year,Total Copies,Available Copies"


def test_add_book_rejects_blank_title(library, librarian):
    with pytest.raises(ValidationFailedError) as excinfo:
        library.add_book(Book("   ", "Someone"), librarian)
    assert excinfo.value.details[0]["field"] == "title"
