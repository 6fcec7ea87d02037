import asyncio
import os

import pytest
from dotenv import load_dotenv

from minilibrary.services.gemini_service import GeminiService
from minilibrary.services.http_client import AIHTTPClient

# Mark this module as integration to skip by default
pytestmark = pytest.mark.integration

# Load environment variables from .env file
load_dotenv()


@pytest.fixture
def live_service(db):
    if not os.getenv("GEMINI_API_KEY"):
        pytest.skip("GEMINI_API_KEY is not set")
    return GeminiService(db, enabled=True)


def test_live_generation(live_service):
    async def run():
        async with AIHTTPClient(timeout=live_service.timeout) as http:
            live_service.http_client = http
            return await live_service.generate_text("Reply with the single word: library")

    text = asyncio.run(run())

    assert text is not None
    assert "library" in text.lower()
    assert live_service.get_usage_stats()["successful_calls_30_days"] == 1
