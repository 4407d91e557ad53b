from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from docspeech.services.key_pool import KeyPool
from docspeech.utils.chunker import split
from docspeech.utils.normalizer import basic_text_cleaning

logger = logging.getLogger(__name__)

DEFAULT_FILTER_URL = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent"

FILTER_PROMPT = """You will receive raw text extracted from a statistical bureau publication. It may contain headers, footers, page numbers, tables of contents, lists of tables, figures and appendices, image captions, infographics and numeric data tables.

Your task: return ALL of the main narrative PARAGRAPH text, keeping every sentence EXACTLY as written.
Keep the original paragraph order. Do not paraphrase, summarize or reorder sentences.

INSTRUCTIONS:
1. Drop headers, footers, page numbers and document metadata.
2. Drop tables of contents and lists of tables, appendices and figures.
3. Drop tables that only hold numbers or statistics without explanation.
4. Drop table notes and table footers.
5. Drop every visual element: images, infographics, diagrams and illustrations.
6. The result must read well through text-to-speech, without changing the original sentence structure.
7. Remove special characters that are not needed."""

ROTATE_STATUSES = frozenset({400, 403, 429})


class ImportantTextFilter:
    def __init__(
        self,
        key_pool: KeyPool | None,
        api_url: str = DEFAULT_FILTER_URL,
        *,
        chunk_size: int = 3000,
        timeout_seconds: float = 30.0,
        pacing_seconds: float = 0.5,
        temperature: float = 0.1,
        max_output_tokens: int = 2048,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.key_pool = key_pool
        self.api_url = api_url.rstrip("/")
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.pacing_seconds = pacing_seconds
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._transport = transport
        self._sleep = sleep

    def filter(self, text: str) -> str:
        key_pool = self.key_pool
        if key_pool is None:
            return basic_text_cleaning(text)
        if not text.strip():
            return ""

        chunks = split(text, self.chunk_size) or [text]
        logger.info("Starting AI text filtering: %s chars in %s chunks", len(text), len(chunks))

        filtered: list[str] = []
        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            for index, chunk in enumerate(chunks):
                filtered.append(self._filter_chunk(client, key_pool, index, chunk))
                self._sleep(self.pacing_seconds)

        result = "\n\n".join(filtered)
        logger.info("AI text filtering completed: %s chars from %s chunks", len(result), len(filtered))
        return result

    def _filter_chunk(self, client: httpx.Client, key_pool: KeyPool, index: int, chunk: str) -> str:
        for _ in range(len(key_pool)):
            key_index, api_key = key_pool.current()
            logger.debug("Sending chunk %s to AI filter (key %s)", index, key_index)
            try:
                response = client.post(self.api_url, params={"key": api_key}, json=self._payload(chunk))
            except httpx.HTTPError as exc:
                logger.warning("AI filtering error for chunk %s: %s", index, exc)
                return basic_text_cleaning(chunk)

            if response.is_success:
                try:
                    answer = self._extract_text(response.json())
                except ValueError:
                    logger.warning("AI filter returned invalid JSON for chunk %s", index)
                    answer = ""
                return answer if answer else basic_text_cleaning(chunk)

            logger.warning(
                "AI filter response failed for chunk %s (%s): %s",
                index,
                response.status_code,
                response.text[:500],
            )
            if response.status_code not in ROTATE_STATUSES:
                return basic_text_cleaning(chunk)
            key_pool.rotate()

        logger.warning("All AI filter keys rejected chunk %s, using basic cleaning", index)
        return basic_text_cleaning(chunk)

    def _payload(self, chunk: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": FILTER_PROMPT}, {"text": chunk}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    @staticmethod
    def _extract_text(payload: object) -> str:
        if not isinstance(payload, dict):
            return ""
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return ""
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        texts = [str(part["text"]) for part in parts if isinstance(part, dict) and "text" in part]
        return "\n".join(texts).strip()
