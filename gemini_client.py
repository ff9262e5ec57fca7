"""
Gemini REST client for text generation.
Uses aiohttp for true async HTTP requests.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from errors import GenerationFailed
from params_config import (
    GEMINI_API_URL,
    GEMINI_MODEL,
    GOOGLE_API_KEY,
    TEMPERATURE,
    MAX_OUTPUT_TOKENS,
    GENERATION_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


def extract_text(result: dict) -> str:
    """Join the text parts of the first candidate. Empty string if there are none."""
    candidates = result.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    content = candidates[0].get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()


class GeminiClient:
    """Content generator backed by the Gemini generateContent endpoint."""

    def __init__(
        self,
        api_key: str = GOOGLE_API_KEY,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_API_URL,
        timeout: float = GENERATION_TIMEOUT_SECONDS,
        temperature: float = TEMPERATURE,
        max_output_tokens: int = MAX_OUTPUT_TOKENS,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def generate(self, prompt: str) -> str:
        """
        Generate text for `prompt`.

        Args:
            prompt: Fully rendered prompt

        Returns:
            Generated text (never empty)

        Raises:
            GenerationFailed: on transport errors, timeouts, error statuses,
                malformed payloads or blank output
        """
        if not self.api_key:
            raise GenerationFailed("GOOGLE_API_KEY is not configured")

        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }
        headers = {
            "accept": "application/json",
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

        logger.info(f"Calling Gemini model {self.model} ({len(prompt)} chars prompt)")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    headers=headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    logger.debug(f"Gemini response status: {response.status}")
                    if response.status != 200:
                        text = await response.text()
                        logger.error(f"Gemini API error: {response.status}")
                        logger.error(f"Response text: {text[:500]}")
                        raise GenerationFailed(f"Gemini API error: {response.status}")
                    result = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            logger.error(f"Gemini call timed out after {self.timeout}s")
            raise GenerationFailed("Gemini call timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"Gemini transport error: {e}")
            raise GenerationFailed(f"Gemini transport error: {e}") from e
        except ValueError as e:
            logger.error(f"Gemini returned invalid JSON: {e}")
            raise GenerationFailed("Gemini returned invalid JSON") from e

        if not isinstance(result, dict):
            raise GenerationFailed("Unexpected Gemini payload")

        text = extract_text(result)
        if not text:
            block_reason = (result.get("promptFeedback") or {}).get("blockReason")
            logger.error(f"Gemini returned no text (block reason: {block_reason})")
            raise GenerationFailed("Gemini returned empty content")

        logger.info(f"Gemini generated {len(text)} chars")
        return text
