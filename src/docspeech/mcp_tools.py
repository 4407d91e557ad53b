from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from docspeech.db.documents import DocumentsRepository
from docspeech.services.extractor import SUPPORTED_MIME_TYPES, guess_mime_type, normalize_mime_type
from docspeech.services.key_pool import KeyPool
from docspeech.services.storage import StorageService

DOCUMENT_STATUSES = ("pending", "processing", "completed", "failed")


class ToolRegistry:
    def __init__(
        self,
        documents: DocumentsRepository,
        storage: StorageService,
        key_pools: dict[str, KeyPool],
        *,
        audio_path: str = "/audio",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.documents = documents
        self.storage = storage
        self.key_pools = key_pools
        self.audio_path = audio_path
        self._sleep = sleep

    def _audio_urls(self, document: dict[str, Any]) -> dict[str, str]:
        urls: dict[str, str] = {}
        if document.get("mp3_path"):
            urls["mp3"] = f"{self.audio_path}/{document['id']}.mp3"
        if document.get("flac_path"):
            urls["flac"] = f"{self.audio_path}/{document['id']}.flac"
        return urls

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)

        @mcp.tool(annotations=ToolAnnotations(readOnlyHint=False, idempotentHint=True))
        def convert_document(path: str, title: str | None = None, mime_type: str | None = None) -> dict[str, Any]:
            """Queue a PDF or Word document for conversion to speech.

            Args:
                path: Path of the document on the server
                title: Optional display title (defaults to the file name)
                mime_type: Optional MIME type; guessed from the extension when omitted

            Returns:
                The queued (or already known) document with its status.
            """
            source = Path(path).expanduser()
            if not source.is_file():
                return {"error": "file_not_found", "path": path}

            mime = normalize_mime_type(mime_type) if mime_type else guess_mime_type(source)
            if mime not in SUPPORTED_MIME_TYPES:
                return {
                    "error": "unsupported_format",
                    "mime_type": mime,
                    "supported_formats": sorted(SUPPORTED_MIME_TYPES),
                }

            stored = self.storage.store_upload(source)
            content_hash = str(stored["content_hash"])

            existing = self.documents.find_by_hash(content_hash)
            if existing is not None:
                return {
                    "document_id": existing["id"],
                    "status": existing["status"],
                    "deduplicated": True,
                    "audio": self._audio_urls(existing),
                }

            document = self.documents.enqueue(
                title=title or source.stem,
                source_path=str(stored["path"]),
                mime_type=mime,
                content_hash=content_hash,
            )
            return {
                "document_id": document["id"],
                "status": document["status"],
                "deduplicated": False,
            }

        @mcp.tool(annotations=_ro)
        def document_status(document_id: str) -> dict[str, Any]:
            document = self.documents.get(document_id)
            if document is None:
                return {"error": "document_not_found", "document_id": document_id}

            status = str(document.get("status", ""))
            if status not in ("completed", "failed"):
                poll_count = self.documents.increment_poll_count(document_id)
                delay = min(1.0 * (2 ** (poll_count - 1)), 30.0)
                self._sleep(delay)
                # Re-fetch in case it finished while we waited
                document = self.documents.get(document_id) or document

            document.pop("extracted_text", None)
            document["audio"] = self._audio_urls(document)
            return document

        @mcp.tool(annotations=_ro)
        def list_documents(status: str | None = None, limit: int = 20) -> dict[str, Any]:
            if status is not None and status not in DOCUMENT_STATUSES:
                return {"error": "invalid_status", "supported_statuses": list(DOCUMENT_STATUSES)}
            items = self.documents.list_documents(status=status, limit=limit)  # type: ignore[arg-type]
            return {
                "count": len(items),
                "totals": self.documents.count_by_status(),
                "items": items,
            }

        @mcp.tool(annotations=_ro)
        def read_text(document_id: str, offset: int = 0, limit: int | None = None) -> dict[str, Any]:
            """Read the cleaned text extracted from a document.

            Args:
                document_id: The document ID to read
                offset: Number of lines to skip (default: 0)
                limit: Max lines to return. None returns all remaining.

            Returns:
                Text content with pagination info (total, offset, count).
            """
            document = self.documents.get(document_id)
            if document is None:
                return {"error": "document_not_found", "document_id": document_id}

            full = str(document.get("extracted_text") or "")
            if not full:
                return {"error": "text_not_available", "document_id": document_id, "status": document["status"]}

            lines = full.splitlines(keepends=True)
            page = lines[offset:] if limit is None else lines[offset:offset + limit]
            return {
                "document_id": document_id,
                "content": "".join(page),
                "total_lines": len(lines),
                "offset": offset,
                "lines_returned": len(page),
            }

        @mcp.tool(annotations=_ro)
        def key_pool_status() -> dict[str, Any]:
            """Show per-key cooldown and current-hour usage for each API key pool."""
            return {name: pool.snapshot() for name, pool in self.key_pools.items()}
