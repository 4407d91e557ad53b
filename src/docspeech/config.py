from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from docspeech.services.content_filter import DEFAULT_FILTER_URL
from docspeech.services.key_pool import parse_api_keys
from docspeech.services.synthesizer import DEFAULT_TTS_URL, DEFAULT_VOICE


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    audio_path: str
    poll_interval_seconds: int
    data_dir: Path
    database_path: Path
    tts_api_keys: list[str]
    filter_api_keys: list[str]
    tts_url: str
    filter_url: str
    voice_name: str
    ffmpeg_path: str
    ffprobe_path: str
    pdftotext_path: str
    pdftk_path: str
    key_cooldown_seconds: int
    tts_max_chunk_length: int
    max_attempts: int
    api_key: str | None


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path.rstrip("/") or "/"


def load_settings() -> Settings:
    load_dotenv()
    data_dir = Path(os.getenv("DATA_DIR", "/data")).resolve()
    database_path = Path(os.getenv("DATABASE_PATH", str(data_dir / "docspeech.sqlite3"))).resolve()

    tts_api_keys = parse_api_keys(os.getenv("GEMINI_API_KEYS"))
    if not tts_api_keys:
        raise RuntimeError("GEMINI_API_KEYS is required")

    # Unset falls back to the TTS keys; an explicit empty value disables the AI filter.
    raw_filter_keys = os.getenv("AI_FILTER_API_KEYS")
    filter_api_keys = list(tts_api_keys) if raw_filter_keys is None else parse_api_keys(raw_filter_keys)

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        audio_path=_normalized_path(os.getenv("AUDIO_PATH", "/audio")),
        poll_interval_seconds=_as_int("POLL_INTERVAL_SECONDS", 5),
        data_dir=data_dir,
        database_path=database_path,
        tts_api_keys=tts_api_keys,
        filter_api_keys=filter_api_keys,
        tts_url=os.getenv("GEMINI_TTS_URL", DEFAULT_TTS_URL),
        filter_url=os.getenv("AI_FILTER_URL", DEFAULT_FILTER_URL),
        voice_name=os.getenv("GEMINI_VOICE", DEFAULT_VOICE),
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
        ffprobe_path=os.getenv("FFPROBE_PATH", "ffprobe"),
        pdftotext_path=os.getenv("PDFTOTEXT_PATH", "pdftotext"),
        pdftk_path=os.getenv("PDFTK_PATH", "pdftk"),
        key_cooldown_seconds=_as_int("KEY_COOLDOWN_SECONDS", 600),
        tts_max_chunk_length=_as_int("TTS_MAX_CHUNK_LENGTH", 500),
        max_attempts=_as_int("MAX_ATTEMPTS", 3),
        api_key=os.getenv("API_KEY") or None,
    )
