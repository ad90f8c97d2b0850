"""
Google Gemini client used by the chatbot.
"""
import asyncio
import json
import logging
from typing import Optional

import aiohttp

from config import settings

logger = logging.getLogger(__name__)

API_URL = "https://generativelanguage.googleapis.com/v1beta/models"
SAFETY_MESSAGE = "Content flagged for safety concerns. Please rephrase your request appropriately."


class GeminiError(Exception):
    """Gemini call failed (configuration, transport or response shape)."""


class GeminiClient:
    def __init__(self, api_key: Optional[str], model: str, timeout: int = 60, temperature: float = 0.7):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    async def generate(self, prompt: str) -> str:
        """
        Send a single-turn prompt and return the first candidate's text.

        Raises:
            GeminiError on missing key, HTTP errors, safety blocks or a
            response without text.
        """
        if not self.api_key:
            raise GeminiError("AI_API_KEY not configured")

        url = f"{API_URL}/{self.model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": self.temperature},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    params={"key": self.api_key},
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    text = await response.text()
                    status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GeminiError(f"Gemini request failed: {e}") from e

        if status == 429:
            logger.warning("Gemini rate limited: %s", text[:200])
            raise GeminiError(f"Rate limited (429): {text[:200]}")
        if status == 403:
            raise GeminiError(f"API key invalid or quota exceeded (403): {text[:200]}")
        if status != 200:
            logger.error("Gemini error %s: %s", status, text[:500])
            raise GeminiError(f"Gemini API error {status}: {text[:200]}")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise GeminiError(f"Failed to parse Gemini response: {e}") from e

        return extract_text(data)


def extract_text(data: dict) -> str:
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise GeminiError(SAFETY_MESSAGE)

    candidates = data.get("candidates") or []
    if not candidates:
        raise GeminiError("No candidates in response")
    candidate = candidates[0]
    if candidate.get("finishReason") == "SAFETY":
        raise GeminiError(SAFETY_MESSAGE)

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts)
    if not text:
        raise GeminiError("No text in response")
    return text.strip()


_client: Optional[GeminiClient] = None


def get_llm() -> GeminiClient:
    global _client
    if _client is None:
        _client = GeminiClient(settings.AI_API_KEY, settings.AI_MODEL, timeout=settings.AI_TIMEOUT_SECONDS)
    return _client
