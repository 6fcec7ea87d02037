import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Dict[str, Any]]) -> None:
    """Print a book listing in the current output mode.
    - plain: '#id Title by Author (available/total available)' lines
    - json: JSON array of id, title, author and copy counts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        payload = [
            {
                "id": b.get("id"),
                "title": b.get("title"),
                "author": b.get("author"),
                "genre": b.get("genre"),
                "available_copies": b.get("available_copies"),
                "total_copies": b.get("total_copies"),
            }
            for b in books
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="dim")
        table.add_column("Available", justify="right")
        for b in books:
            available = f"{b.get('available_copies')}/{b.get('total_copies')}"
            style = "green" if b.get("available_copies") else "red"
            table.add_row(str(b.get("id")), b.get("title") or "", b.get("author") or "",
                          b.get("genre") or "", f"[{style}]{available}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"#{b.get('id')} {b.get('title')} by {b.get('author')} "
                  f"({b.get('available_copies')}/{b.get('total_copies')} available)")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: the full statistics object
    - rich: Panel with the main metrics and a genre table
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    metrics = [
        ("Total Books", stats.get("total_books", 0)),
        ("Total Users", stats.get("total_users", 0)),
        ("Active Checkouts", stats.get("active_checkouts", 0)),
        ("Overdue", stats.get("overdue_count", 0)),
    ]

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in metrics)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
        if stats.get("genre_counts"):
            table = Table(title="Top Genres", header_style="bold cyan")
            table.add_column("Genre")
            table.add_column("Books", justify="right")
            for g in stats["genre_counts"]:
                table.add_row(g["genre"], str(g["count"]))
            _console.print(table)
    else:
        for label, value in metrics:
            print(f"{label}: {value}")


def print_user_result(user: Dict[str, Any]) -> None:
    """Print a user record; the API key is shown when present."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(user, ensure_ascii=False))
    elif mode == "rich":
        lines = [f"[bold]{k}:[/] {user[k]}" for k in ("id", "name", "email", "role", "api_key") if k in user]
        _console.print(Panel.fit("\n".join(lines), title="👤 User", border_style="green"))
    else:
        print(f"User #{user.get('id')}: {user.get('name')} <{user.get('email')}> [{user.get('role')}]")
        if user.get("api_key"):
            print(f"API key: {user['api_key']}")
