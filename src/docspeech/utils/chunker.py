from __future__ import annotations

import re

from docspeech.types import TextChunk

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_CLAUSE_SPLIT_RE = re.compile(r"(?<=[,;:])\s+")
_TERMINAL_RE = re.compile(r"[.!?]")


def _split_sentences(text: str) -> list[str]:
    return [part for part in _SENTENCE_SPLIT_RE.split(text) if part.strip()]


def _split_clauses(sentence: str) -> list[str]:
    return [part for part in _CLAUSE_SPLIT_RE.split(sentence) if part.strip()]


def _pack(units: list[str], max_len: int, chunks: list[str], buffer: str = "") -> str:
    """Greedily append units to ``buffer``, flushing full chunks into ``chunks``.

    Returns the still-open buffer so the caller can keep packing after it.
    """
    for unit in units:
        candidate = f"{buffer} {unit}" if buffer else unit
        if len(candidate) <= max_len:
            buffer = candidate
            continue
        if buffer:
            chunks.append(buffer)
        buffer = unit
    return buffer


def split(text: str, max_len: int) -> list[str]:
    if max_len <= 0:
        raise ValueError("max_len must be > 0")

    stripped = text.strip()
    if not stripped:
        return []

    if not _TERMINAL_RE.search(stripped):
        return [stripped]

    sentences = _split_sentences(stripped)

    chunks: list[str] = []
    buffer = ""
    for sentence in sentences:
        candidate = f"{buffer} {sentence}" if buffer else sentence
        if len(candidate) <= max_len:
            buffer = candidate
            continue

        if buffer:
            chunks.append(buffer)
            buffer = ""

        if len(sentence) > max_len:
            # Oversized sentence: pack its clauses; an unsplittable clause passes through as-is.
            buffer = _pack(_split_clauses(sentence), max_len, chunks)
        else:
            buffer = sentence

    if buffer:
        chunks.append(buffer)
    return chunks


def build_chunks(text: str, max_len: int) -> list[TextChunk]:
    return [TextChunk(index=index, text=chunk) for index, chunk in enumerate(split(text, max_len))]
