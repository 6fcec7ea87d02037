"""Model-backed search, recommendations, summaries and chat.

Every method returns a usable result even when the model is switched off,
unreachable or replies with something that is not the JSON we asked for.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from minilibrary.config import Settings, settings as default_settings
from minilibrary.library import Library
from minilibrary.models import User

logger = logging.getLogger(__name__)

CHAT_FALLBACK_REPLY = (
    "Sorry, the library assistant is not available right now. "
    "You can still browse and search the catalog."
)

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def parse_model_json(text: Optional[str]) -> Any:
    """Decode a JSON reply, tolerating markdown code fences.

    Raises ValueError when there is nothing decodable.
    """
    if not text:
        raise ValueError("Empty model reply")
    cleaned = _FENCE.sub("", text).replace("```", "").strip()
    return json.loads(cleaned)


class LibraryAssistant:
    def __init__(self, library: Library, ai_service, settings: Optional[Settings] = None) -> None:
        self.library = library
        self.ai_service = ai_service
        self.settings = settings or default_settings

    # ------------------------- Search ------------------------- #
    async def search(self, query: str) -> Dict[str, Any]:
        """Turn a natural-language query into catalog filters and run them."""
        query = (query or "").strip()
        prompt = f"""Convert this natural language library search query into structured search filters.

Query: "{query}"

Return a JSON object with these optional fields:
- "title": partial title match string
- "author": partial author match string
- "genre": genre category string
- "availableOnly": boolean, true if user wants only available books

Only return the JSON object, nothing else."""

        text = await self.ai_service.generate_text(prompt)
        try:
            parsed = parse_model_json(text)
            if not isinstance(parsed, dict):
                raise ValueError("Expected a JSON object")
        except ValueError as e:
            logger.warning(f"AI search fell back to plain matching: {e}")
            books = self.library.search_books(text=query, text_fields=("title", "author"))
            return {"books": books, "filters": {}}

        filters: Dict[str, Any] = {}
        for key in ("title", "author", "genre"):
            value = parsed.get(key)
            if isinstance(value, str) and value.strip():
                filters[key] = value.strip()
        if parsed.get("availableOnly") is True:
            filters["availableOnly"] = True

        if filters:
            books = self.library.search_books(
                title=filters.get("title"),
                author=filters.get("author"),
                genre=filters.get("genre"),
                available_only=filters.get("availableOnly", False),
            )
        else:
            books = self.library.search_books(text=query, text_fields=("title", "author", "genre"))
        return {"books": books, "filters": filters}

    # ------------------------- Recommendations ------------------------- #
    async def recommend(self, user: User) -> List[Dict[str, Any]]:
        """3-5 available books picked from the user's reading history."""
        history = self.library.reading_history(user.id, limit=20)
        pool = self.library.catalog_snapshot(limit=self.settings.ai_recommend_pool, available_only=True)
        if not pool:
            return []

        read_books = [f'"{h["title"]}" by {h["author"]} ({h["genre"] or "General"})' for h in history]
        available_books = [
            f'ID:{b.id} - "{b.title}" by {b.author} ({b.genre or "General"}): '
            f'{(b.description or "No description")[:100]}'
            for b in pool
        ]
        prompt = f"""You are a librarian AI. Based on the user's reading history, recommend 3-5 books from the available catalog.

User's reading history:
{chr(10).join(read_books) if read_books else "No reading history yet - suggest popular diverse picks."}

Available books in our library:
{chr(10).join(available_books)}

Return your response as a JSON array with objects containing: "id" (the book ID), "title", "reason" (a short personalized explanation of why you recommend it).
Only return the JSON array, no other text."""

        text = await self.ai_service.generate_text(prompt)
        try:
            parsed = parse_model_json(text)
            if not isinstance(parsed, list):
                raise ValueError("Expected a JSON array")
        except ValueError as e:
            logger.warning(f"AI recommendations unavailable for user {user.id}: {e}")
            return []

        by_id = {b.id: b for b in pool}
        recommendations = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            try:
                book_id = int(item.get("id"))
            except (TypeError, ValueError):
                continue
            book = by_id.get(book_id)
            # Only books that exist and can be borrowed right now
            if book is None:
                continue
            recommendations.append({
                "id": book.id,
                "title": book.title,
                "reason": str(item.get("reason") or "").strip(),
            })
        return recommendations

    # ------------------------- Summaries ------------------------- #
    async def summarize(self, title: str, author: str, isbn: Optional[str] = None) -> Dict[str, Any]:
        isbn_part = f" (ISBN: {isbn})" if isbn else ""
        prompt = f"""Write a compelling 2-3 sentence book description for a library catalog entry.

Book: "{title}" by {author}{isbn_part}

The description should be engaging and informative, mentioning the genre, themes, and what makes this book notable. Keep it concise and suitable for a library catalog."""

        text = await self.ai_service.generate_text(prompt)
        if text:
            return {"summary": text.strip(), "generated": True}
        logger.warning(f"AI summary unavailable for {title!r}; using generic description")
        return {
            "summary": f'"{title}" by {author} is part of the library collection. '
                       f"Ask a librarian or check the catalog for more details.",
            "generated": False,
        }

    # ------------------------- Chat ------------------------- #
    def _catalog_context(self) -> str:
        books = self.library.catalog_snapshot(limit=self.settings.ai_catalog_limit)
        return "\n".join(
            f'- "{b.title}" by {b.author} ({b.genre or "General"}) - '
            f'{"Available" if b.is_available else "Checked out"}'
            for b in books
        )

    async def chat(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        """One non-streaming assistant turn grounded in the catalog."""
        system = f"""You are a helpful AI library assistant for "{self.settings.app_name}", a modern library management system.
You help users find books, get recommendations, and answer questions about the library.
Be friendly, concise, and knowledgeable about literature.

Here is the current library catalog:
{self._catalog_context()}

When recommending books, prioritize ones that are available. If a user asks about a book not in the catalog, let them know and suggest similar available books."""

        text = await self.ai_service.generate_text(system=system, messages=messages)
        if text:
            return {"reply": text, "generated": True}
        logger.warning("AI chat unavailable; returning fallback reply")
        return {"reply": CHAT_FALLBACK_REPLY, "generated": False}
