import os
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from minilibrary.api import create_app
from minilibrary.circulation import Circulation
from minilibrary.config import Settings
from minilibrary.database import Database
from minilibrary.library import Library
from minilibrary.models import Book
from minilibrary.roles import Role


def pytest_collection_modifyitems(config, items):
    # Live-model tests only run on request
    if os.environ.get("RUN_INTEGRATION") == "1":
        return
    skip = pytest.mark.skip(reason="integration test; set RUN_INTEGRATION=1 to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


class FakeAIService:
    """Stands in for GeminiService: returns queued replies, records prompts."""

    def __init__(self, replies: Optional[List[Optional[str]]] = None, available: bool = True) -> None:
        self.replies = list(replies or [])
        self.available = available
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *replies: Optional[str]) -> None:
        self.replies.extend(replies)

    def is_available(self) -> bool:
        return self.available

    async def generate_text(self, prompt=None, *, system=None, messages=None):
        self.calls.append({"prompt": prompt, "system": system, "messages": messages})
        if not self.available or not self.replies:
            return None
        return self.replies.pop(0)

    def get_usage_stats(self) -> Dict[str, Any]:
        return {"model": "fake", "total_calls_30_days": len(self.calls), "api_available": self.available}


@pytest.fixture
def db(tmp_path, request):
    # Unique database file per test
    database = Database(str(tmp_path / f"test_{request.node.name}.db"))
    database.create_tables()
    return database


@pytest.fixture
def library(db):
    return Library(db)


@pytest.fixture
def circulation(db):
    return Circulation(db)


@pytest.fixture
def member(library):
    return library.create_user("Mary Member", "mary@example.com")


@pytest.fixture
def other_member(library):
    return library.create_user("Oscar Other", "oscar@example.com")


@pytest.fixture
def librarian(library):
    return library.create_user("Lena Librarian", "lena@example.com", Role.LIBRARIAN)


@pytest.fixture
def admin(library):
    return library.create_user("Ada Admin", "ada@example.com", Role.ADMIN)


@pytest.fixture
def make_book(library, librarian):
    def _make(title="Dune", author="Frank Herbert", copies=1, **fields):
        return library.add_book(Book(title=title, author=author, total_copies=copies, **fields), librarian)
    return _make


@pytest.fixture
def fake_ai():
    return FakeAIService()


@pytest.fixture
def client(db, fake_ai):
    app = create_app(Settings(), database=db, ai_service=fake_ai)
    with TestClient(app) as test_client:
        yield test_client