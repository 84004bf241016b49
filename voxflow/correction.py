"""LLM post-correction of raw transcriptions over an OpenAI-compatible API."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from voxflow.config import (
    CORRECTION_TEMPERATURE,
    CORRECTION_TIMEOUT,
    MIN_CORRECTION_TOKENS,
    Settings,
)
from voxflow.errors import CorrectionFailed

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a speech recognition post-processor. Fix the output of a speech-to-text (ASR) system.

Rules:
1. Fix obvious homophone and misrecognition errors
2. Add appropriate punctuation and capitalization
3. Do not change the meaning or add content that was not said
4. Do not translate; keep the original language
5. Keep mixed-language words exactly as spoken
6. Return ONLY the corrected text, no explanations"""


@dataclass(frozen=True)
class CorrectionPrompt:
    system: str
    user: str


def build_prompt(raw_text: str) -> CorrectionPrompt:
    return CorrectionPrompt(system=SYSTEM_PROMPT, user=raw_text)


class CorrectionClient:
    """
    Chat-completions client used to polish transcriptions.

    correct() never raises: any failure returns the text it was given, so a
    broken endpoint can never block a commit.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model: str,
        timeout: float = CORRECTION_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.strip().rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "CorrectionClient":
        return cls(settings.llm_endpoint, settings.llm_api_key, settings.llm_model, **kwargs)

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    @property
    def url(self) -> str:
        return f"{self.endpoint}/v1/chat/completions"

    def _payload(self, raw_text: str) -> dict:
        prompt = build_prompt(raw_text)
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "temperature": CORRECTION_TEMPERATURE,
            "max_tokens": max(len(raw_text) * 3, MIN_CORRECTION_TOKENS),
        }

    async def _request(self, raw_text: str) -> str:
        """
        Issue the completion request.

        Raises:
            CorrectionFailed: On network errors, bad status or unexpected payloads
        """
        try:
            # A fresh client per call: each session runs on its own event loop
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=self._payload(raw_text),
                )
        except httpx.TimeoutException as e:
            raise CorrectionFailed(f"LLM request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise CorrectionFailed(f"LLM request failed: {e}") from e

        if response.status_code != 200:
            raise CorrectionFailed(
                f"LLM API error ({response.status_code}): {response.text[:200]}"
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CorrectionFailed(f"Unexpected LLM response format: {e}") from e

        if not isinstance(content, str) or not content.strip():
            raise CorrectionFailed("Empty correction from LLM")
        return content.strip()

    async def correct(self, raw_text: str) -> str:
        """Return the corrected text, or raw_text unchanged on any failure."""
        if not raw_text:
            return raw_text
        try:
            return await self._request(raw_text)
        except CorrectionFailed as e:
            logger.warning(f"Correction failed, using raw: {e}")
        except Exception as e:
            logger.warning(f"Correction failed unexpectedly, using raw: {e}")
        return raw_text
