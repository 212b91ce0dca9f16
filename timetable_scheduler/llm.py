from __future__ import annotations

import logging
from typing import Optional

import httpx
from openai import OpenAI

from .config import Settings

logger = logging.getLogger(__name__)


class LLMClient:
    """
    Thin OpenAI-compatible text-completion client.

    No retries: the plan generator falls back to a synthetic plan instead.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        if not api_key or not api_key.strip():
            raise RuntimeError("LLM API key is not set. Set TIMETABLE_LLM_API_KEY in your .env.")
        self.model = model
        self._client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        return cls(
            api_key=settings.llm_api_key or "",
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        logger.info("LLM: requesting completion model=%s", self.model)
        resp = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.7,
        )
        content = resp.choices[0].message.content if resp.choices else None
        return content or ""
