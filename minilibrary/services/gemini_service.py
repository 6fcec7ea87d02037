import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from minilibrary.config import settings
from minilibrary.database import Database
from minilibrary.services.http_client import AIHTTPClient

logger = logging.getLogger(__name__)


class GeminiAPIError(Exception):
    """Error talking to the Gemini API"""
    pass


class RateLimitExceeded(GeminiAPIError):
    """Rate limit exceeded"""
    pass


class GeminiService:
    """Text generation through Google's Generative Language REST API"""

    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, db: Database, http_client: Optional[AIHTTPClient] = None,
                 api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None, enabled: Optional[bool] = None) -> None:
        self.db = db
        self.http_client = http_client
        self.api_key = api_key or settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.timeout = timeout or settings.gemini_timeout
        self.enabled = settings.enable_ai_features if enabled is None else enabled

    def is_available(self) -> bool:
        """Check if the service is configured and switched on"""
        return bool(self.api_key) and self.enabled

    def _log_api_usage(self, endpoint: str, characters_used: int, success: bool, response_time_ms: int = 0) -> None:
        """Record one API call in api_usage_logs.

        Blocking; async callers run it in a worker thread. A single autocommit
        INSERT, so it never holds the write lock longer than the statement.
        """
        try:
            with self.db.connection() as conn:
                conn.execute("""
                    INSERT INTO api_usage_logs (api_name, endpoint, success, response_time_ms, characters_used)
                    VALUES (?, ?, ?, ?, ?)
                """, ("gemini", endpoint, success, response_time_ms, characters_used))
        except Exception as e:
            logger.error(f"Failed to log API usage: {e}")

    async def _make_api_request(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """POST a generateContent request and return the decoded JSON body"""
        url = f"{self.base_url}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        if self.http_client is not None and not self.http_client.is_closed:
            response = await self.http_client.post_json(url, payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)

        if response.status_code == 200:
            return response.json()
        if response.status_code == 429:
            logger.warning("Rate limit exceeded for Gemini API")
            raise RateLimitExceeded("Rate limit exceeded")
        logger.error(f"API request failed: {response.status_code} - {response.text[:200]}")
        return None

    @staticmethod
    def _extract_text(body: Optional[Dict[str, Any]]) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        candidates = body.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()
        return text or None

    async def generate_text(self, prompt: Optional[str] = None, *, system: Optional[str] = None,
                            messages: Optional[List[Dict[str, str]]] = None) -> Optional[str]:
        """
        Generate text from a single prompt or a conversation.

        Args:
            prompt: user prompt, used when `messages` is not given
            system: optional system instruction
            messages: conversation as [{"role": "user"|"assistant", "content": ...}]

        Returns:
            The model's text, or None if the service is unavailable or failed
        """
        if not self.is_available():
            logger.info("Gemini service not available; skipping generation")
            return None

        if messages:
            contents = [
                {"role": "model" if m.get("role") == "assistant" else "user",
                 "parts": [{"text": m.get("content", "")}]}
                for m in messages
            ]
        else:
            contents = [{"role": "user", "parts": [{"text": prompt or ""}]}]
        payload: Dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        characters_used = sum(len(p["text"]) for c in contents for p in c["parts"]) + len(system or "")
        start_time = time.time()
        try:
            body = await self._make_api_request(payload)
            response_time_ms = int((time.time() - start_time) * 1000)
            text = self._extract_text(body)
            await asyncio.to_thread(self._log_api_usage, self.model, characters_used,
                                    text is not None, response_time_ms)
            if text is not None:
                logger.info(f"Gemini generation succeeded: {characters_used} chars in, {len(text)} chars out")
            return text
        except httpx.TimeoutException:
            logger.error(f"API request timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Gemini generation failed: {e}")
        await asyncio.to_thread(self._log_api_usage, self.model, characters_used, False)
        return None

    def get_usage_stats(self) -> Dict[str, Any]:
        """Call statistics for the last 30 days"""
        with self.db.connection() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total_calls,
                       SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) AS successful_calls,
                       AVG(response_time_ms) AS avg_response_time,
                       SUM(characters_used) AS characters_used
                FROM api_usage_logs
                WHERE api_name = 'gemini'
                AND created_at >= datetime('now', '-30 days')
            """).fetchone()

        total_calls = row["total_calls"] or 0
        successful_calls = row["successful_calls"] or 0
        return {
            "model": self.model,
            "total_calls_30_days": total_calls,
            "successful_calls_30_days": successful_calls,
            "success_rate": (successful_calls / total_calls * 100) if total_calls > 0 else 0,
            "avg_response_time_ms": row["avg_response_time"] or 0,
            "characters_used_30_days": row["characters_used"] or 0,
            "api_available": self.is_available(),
        }
