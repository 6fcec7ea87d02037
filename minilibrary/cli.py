import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

import typer

from minilibrary.circulation import Circulation
from minilibrary.config import settings
from minilibrary.database import Database, open_database
from minilibrary.errors import LibraryError
from minilibrary.library import Library
from minilibrary.models import Book, User
from minilibrary.roles import Role
from minilibrary.ui_helpers import (
    print_list_result,
    print_stats_result,
    print_user_result,
    set_output_mode,
)

APP_NAME = "Mini Library CLI"

logger = logging.getLogger(__name__)

app = typer.Typer(help=APP_NAME)

# Commands run as the local operator, who has full rights over the database file
OPERATOR = User(id=0, name="cli", email="cli@localhost", role=Role.ADMIN)


def _database(ctx: typer.Context) -> Database:
    return open_database(ctx.obj["db_file"])


def _fail(error: Exception) -> None:
    print(f"Error: {error}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db_file: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database file (default: LIBRARY_DB_FILE or library.db)",
    ),
):
    """Global CLI options (output mode, database file)."""
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    if output:
        set_output_mode(output)
    ctx.obj = {"db_file": db_file or settings.database_file}


@app.command("init-db")
def cli_init_db(ctx: typer.Context):
    """Create the database schema."""
    db = _database(ctx)
    print(f"Database initialized at {db.path}")


@app.command("create-user")
def cli_create_user(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name"),
    email: str = typer.Argument(..., help="Unique email address"),
    role: str = typer.Option("MEMBER", "--role", "-r", help="MEMBER, LIBRARIAN or ADMIN"),
):
    """Create a user and print the API key they authenticate with."""
    try:
        user_role = Role.parse(role.upper())
    except ValueError:
        _fail(f"Invalid role {role!r}; expected ADMIN, LIBRARIAN or MEMBER")
    library = Library(_database(ctx))
    try:
        user = library.create_user(name, email, user_role)
    except LibraryError as e:
        _fail(e)
    print_user_result(user.to_dict(include_api_key=True))


@app.command("set-role")
def cli_set_role(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Email of the user to change"),
    role: str = typer.Argument(..., help="MEMBER, LIBRARIAN or ADMIN"),
):
    """Change a user's role."""
    library = Library(_database(ctx))
    user = library.find_user_by_email(email)
    if not user:
        _fail(f"No user with email {email}")
    try:
        updated = library.update_role(OPERATOR, user.id, role.upper())
    except LibraryError as e:
        _fail(e)
    print(f"{updated.email} is now {updated.role.value}")


@app.command("list")
def cli_list(
    ctx: typer.Context,
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Free text over title, author, ISBN, genre"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Exact genre (case-insensitive)"),
    available: bool = typer.Option(False, "--available", help="Only books with a copy on the shelf"),
    page: int = typer.Option(1, "--page", help="Page number"),
    limit: int = typer.Option(50, "--limit", "-l", help="Books per page"),
    sort: str = typer.Option("title", "--sort", help="created_at, title, author or published_year"),
):
    """List books in the catalog."""
    library = Library(_database(ctx), max_page_size=settings.max_page_size)
    order = "desc" if sort == "created_at" else "asc"
    try:
        result = library.list_books(query=query, genre=genre, available=available,
                                    page=page, limit=limit, sort=sort, order=order)
    except LibraryError as e:
        _fail(e)
    print_list_result(result["books"])


@app.command("add")
def cli_add(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Book title"),
    author: str = typer.Argument(..., help="Book author"),
    isbn: Optional[str] = typer.Option(None, "--isbn", help="ISBN"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Genre"),
    publisher: Optional[str] = typer.Option(None, "--publisher", help="Publisher"),
    year: Optional[int] = typer.Option(None, "--year", min=0, max=2100, help="Publication year"),
    copies: int = typer.Option(1, "--copies", "-c", min=1, help="Number of copies"),
):
    """Add a book; every copy starts available."""
    library = Library(_database(ctx))
    try:
        book = library.add_book(
            Book(title=title, author=author, isbn=isbn, genre=genre, publisher=publisher,
                 published_year=year, total_copies=copies),
            OPERATOR,
        )
    except LibraryError as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} (id {book.id}, {book.total_copies} copies)")


@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show library statistics."""
    library = Library(_database(ctx))
    print_stats_result(library.get_statistics())


@app.command("export")
def cli_export(
    ctx: typer.Context,
    output: str = typer.Option("library_export.csv", "--file", "-f", help="Destination CSV file"),
):
    """Export the inventory as CSV."""
    library = Library(_database(ctx))
    content = library.export_csv()
    Path(output).write_text(content, encoding="utf-8")
    rows = max(0, len(content.splitlines()) - 1)
    print(f"Exported {rows} books to {output}")


@app.command("expire-reservations")
def cli_expire_reservations(ctx: typer.Context):
    """Mark lapsed PENDING reservations as EXPIRED."""
    circulation = Circulation(_database(ctx))
    count = circulation.expire_reservations()
    print(f"Expired {count} reservation(s)")


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)"),
):
    """Run the API under uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "minilibrary.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    env = dict(os.environ, LIBRARY_DB_FILE=ctx.obj["db_file"])
    if timeout and timeout > 0:
        proc = subprocess.Popen(args, env=env, start_new_session=os.name != "nt")
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3)
    else:
        subprocess.run(args, env=env)


if __name__ == "__main__":
    app()
