from __future__ import annotations

import hashlib
import json
import re
import shutil
from pathlib import Path

from docspeech.types import ConversionResult

_HASH_CHUNK_BYTES = 1024 * 1024


def _sanitize_path_component(value: str, fallback: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9._-]+", "_", value.strip())
    clean = clean.strip("._")
    return clean or fallback


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as stream:
        for block in iter(lambda: stream.read(_HASH_CHUNK_BYTES), b""):
            digest.update(block)
    return digest.hexdigest()


class StorageService:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.uploads_root = data_dir / "uploads"
        self.audio_root = data_dir / "audio"
        self.uploads_root.mkdir(parents=True, exist_ok=True)
        self.audio_root.mkdir(parents=True, exist_ok=True)

    def store_upload(self, source: Path) -> dict[str, object]:
        if not source.is_file():
            raise RuntimeError(f"Document not found: {source}")

        content_hash = file_sha256(source)
        suffix = source.suffix.lower()
        if not re.fullmatch(r"\.[a-z0-9]{1,10}", suffix):
            suffix = ""
        destination = self.uploads_root / f"{content_hash}{suffix}"
        if not destination.exists():
            shutil.copyfile(source, destination)

        return {
            "content_hash": content_hash,
            "path": str(destination),
            "size": destination.stat().st_size,
        }

    def audio_dir(self, document_id: str) -> Path:
        return self.audio_root / _sanitize_path_component(document_id, "unknown")

    def persist_audio(
        self,
        document_id: str,
        result: ConversionResult,
        metadata: dict[str, object] | None = None,
    ) -> dict[str, object]:
        target_dir = self.audio_dir(document_id)
        target_dir.mkdir(parents=True, exist_ok=True)

        mp3_path = target_dir / "audio.mp3"
        mp3_path.write_bytes(result.mp3)

        flac_path: Path | None = None
        if result.flac is not None:
            flac_path = target_dir / "audio.flac"
            flac_path.write_bytes(result.flac)

        metadata_payload = dict(metadata or {})
        metadata_payload.update(
            {
                "document_id": document_id,
                "duration_seconds": result.duration_seconds,
                "success_rate": result.success_rate,
                "completed_chunks": result.completed_chunks,
                "total_chunks": result.total_chunks,
                "mp3_size": len(result.mp3),
                "flac_size": len(result.flac) if result.flac is not None else None,
            }
        )
        metadata_path = target_dir / "metadata.json"
        metadata_path.write_text(json.dumps(metadata_payload, indent=2, sort_keys=True), encoding="utf-8")

        return {
            "path": str(target_dir),
            "mp3_path": str(mp3_path),
            "flac_path": str(flac_path) if flac_path is not None else None,
            "metadata_path": str(metadata_path),
        }
