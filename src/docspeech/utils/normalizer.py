from __future__ import annotations

import re
import unicodedata

from charset_normalizer import from_bytes

ENCODING_CANDIDATES = ("utf_8", "cp1252", "latin_1")

ORGANIZATION_HEADERS = ("BPS", "Badan Pusat Statistik", "Sulawesi Utara", "SULUT")

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_LINE_BREAK_RE = re.compile(r"\r\n?")
_HORIZONTAL_SPACE_RE = re.compile(r"[ \t]+")
_SPACE_AROUND_NEWLINE_RE = re.compile(r" *\n *")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_WHITESPACE_RE = re.compile(r"\s+")

_TERMINAL_RUN_RE = re.compile(r"([.!?])(?:\s*[.!?])+")
_REPEATED_CHAR_RE = re.compile(r"(.)\1{10,}")

_PAGE_MARKER_RE = re.compile(r"\bHalaman \d+\b", re.IGNORECASE)
_TRAILING_PAGE_NUMBER_RE = re.compile(r"\b\d+\s*$", re.MULTILINE)
_NUMERIC_RUN_RE = re.compile(r"(\d+[\s,.]+){4,}")
_ORGANIZATION_RE = re.compile(
    r"\b(" + "|".join(re.escape(name) for name in ORGANIZATION_HEADERS) + r")\s+(Provinsi|Province)?\s*\d*",
    re.IGNORECASE,
)
_ISBN_RE = re.compile(r"\b(ISBN|ISSN)\s*:?\s*[\dX-]+", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_URL_RE = re.compile(r"https?://\S+")
_REPEATED_WORD_RE = re.compile(r"\b(\w+)\s+\1\b", re.IGNORECASE)
_ELLIPSIS_RE = re.compile(r"\.{3,}")

_SPEECH_CATEGORIES = ("L", "N", "P", "Z")


def detect_encoding(raw: bytes) -> str:
    try:
        raw.decode("utf-8")
        return "utf-8"
    except UnicodeDecodeError:
        pass

    best = from_bytes(raw, cp_isolation=list(ENCODING_CANDIDATES[1:])).best()
    if best is None or not best.encoding:
        return "utf-8"
    return best.encoding.replace("_", "-").lower()


def to_text(value: str | bytes) -> str:
    if isinstance(value, str):
        return value
    encoding = detect_encoding(value)
    # Malformed multi-byte fragments are dropped rather than replaced.
    return value.decode(encoding, errors="ignore")


def sanitize(value: str | bytes) -> str:
    """Repair encoding damage and normalize whitespace.

    The result keeps newlines and tabs-turned-spaces only; running it again
    on its own output returns the same string.
    """
    text = to_text(value)
    text = text.replace("\ufffd", "")
    text = _LINE_BREAK_RE.sub("\n", text)
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _HORIZONTAL_SPACE_RE.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE_RE.sub("\n", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def _speakable(char: str) -> bool:
    return char.isspace() or unicodedata.category(char)[0] in _SPEECH_CATEGORIES


def optimize_for_speech(text: str) -> str:
    text = "".join(char if _speakable(char) else " " for char in text)
    text = _WHITESPACE_RE.sub(" ", text)
    text = _TERMINAL_RUN_RE.sub(r"\1", text)
    text = _REPEATED_CHAR_RE.sub(r"\1\1\1", text)
    return text.strip()


def basic_text_cleaning(text: str) -> str:
    text = _WHITESPACE_RE.sub(" ", text)
    text = _PAGE_MARKER_RE.sub("", text)
    text = _TRAILING_PAGE_NUMBER_RE.sub("", text)
    text = _NUMERIC_RUN_RE.sub("", text)
    text = _ORGANIZATION_RE.sub("", text)
    text = _ISBN_RE.sub("", text)
    text = _EMAIL_RE.sub("", text)
    text = _URL_RE.sub("", text)
    text = _REPEATED_WORD_RE.sub(r"\1", text)
    text = _ELLIPSIS_RE.sub("...", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()
