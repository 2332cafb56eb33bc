"""
Recognition Oracle Client
=========================
Thin async client for the Gemini structured-output API (google-genai).

The gateway owns prompts, schemas, retries and normalization; this module
only performs the call and translates API errors into the pipeline's
error taxonomy.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .exceptions import RecognitionError, ThrottleError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


class RecognitionOracle(Protocol):
    """Anything that can turn one page image into a JSON string."""

    async def generate(
        self,
        *,
        image: bytes,
        mime_type: str,
        prompt: str,
        schema: dict[str, Any],
    ) -> str: ...


class GeminiOracle:
    """Gemini-backed oracle: one image + prompt in, schema-shaped JSON out."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        temperature: float = 0.1,
        thinking_budget: Optional[int] = 2048,
    ):
        if not api_key:
            raise RuntimeError(
                "GEMINI_API_KEY is missing. Export it or pass --api-key."
            )
        self.model = model
        self.temperature = temperature
        self.thinking_budget = thinking_budget
        self._client = genai.Client(api_key=api_key)

    def _build_config(self, schema: dict[str, Any]) -> types.GenerateContentConfig:
        config_kwargs: dict[str, Any] = {
            "temperature": self.temperature,
            "response_mime_type": "application/json",
            "response_schema": schema,
        }
        if self.thinking_budget is not None:
            config_kwargs["thinking_config"] = types.ThinkingConfig(
                thinking_budget=self.thinking_budget
            )
        return types.GenerateContentConfig(**config_kwargs)

    async def generate(
        self,
        *,
        image: bytes,
        mime_type: str,
        prompt: str,
        schema: dict[str, Any],
    ) -> str:
        contents = [types.Part.from_bytes(data=image, mime_type=mime_type), prompt]
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=self._build_config(schema),
            )
        except genai_errors.APIError as e:
            if e.code == 429 or e.status == "RESOURCE_EXHAUSTED":
                raise ThrottleError(f"Gemini rate limit: {e.message}") from e
            raise RecognitionError(f"Gemini API error {e.code}: {e.message}") from e

        return response.text or "{}"
