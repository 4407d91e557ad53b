from __future__ import annotations

import logging
from pathlib import Path
from threading import Event, Thread

from docspeech.db.documents import DocumentsRepository
from docspeech.errors import EmptyDocument
from docspeech.services.extractor import DocumentTextExtractor
from docspeech.services.storage import StorageService
from docspeech.services.synthesizer import SpeechSynthesisOrchestrator
from docspeech.types import ChunkStatus

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10
LARGE_TEXT_WARNING = 500_000

TTS_PROGRESS_START = 25
TTS_PROGRESS_SPAN = 59


def tts_progress(index: int, total: int, status: ChunkStatus) -> int:
    """Map a chunk event onto the 25-84 band of the document progress bar."""
    done = index + 1 if status in (ChunkStatus.COMPLETED, ChunkStatus.FAILED) else index
    if total <= 0:
        return TTS_PROGRESS_START
    return TTS_PROGRESS_START + (TTS_PROGRESS_SPAN * min(done, total)) // total


class BackgroundWorker:
    def __init__(
        self,
        *,
        documents: DocumentsRepository,
        extractor: DocumentTextExtractor,
        synthesizer: SpeechSynthesisOrchestrator,
        storage: StorageService,
        poll_interval_seconds: int,
        max_attempts: int = 3,
    ) -> None:
        self.documents = documents
        self.extractor = extractor
        self.synthesizer = synthesizer
        self.storage = storage
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._stop_event = Event()
        self._thread = Thread(target=self._run_loop, name="docspeech-worker", daemon=True)

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def stop(self, timeout_seconds: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout_seconds)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            document = self.documents.claim_next()
            if document is None:
                self._stop_event.wait(self.poll_interval_seconds)
                continue
            self.run_once(document)

    def run_once(self, document: dict[str, object]) -> None:
        document_id = str(document["id"])
        attempts = int(str(document.get("attempts") or 1))
        try:
            logger.info("Processing document %s (attempt %s/%s)", document_id, attempts, self.max_attempts)
            self._process_document(
                document_id=document_id,
                source_path=Path(str(document["source_path"])),
                mime_type=str(document["mime_type"]),
                title=str(document.get("title") or ""),
            )
            logger.info("Completed document %s", document_id)
        except Exception as exc:  # pylint: disable=broad-except
            message = (str(exc).strip() or "Unknown worker error")[:2000]
            retryable = bool(getattr(exc, "retryable", True))
            if retryable and attempts < self.max_attempts:
                logger.warning("Document %s failed, retrying later: %s", document_id, message)
                self.documents.requeue(document_id, message)
                return
            logger.exception("Document %s failed: %s", document_id, message)
            self.documents.mark_failed(document_id, message)

    def _process_document(self, *, document_id: str, source_path: Path, mime_type: str, title: str) -> None:
        self.documents.update_progress(document_id, 0, "initializing", "Starting document processing")

        self.documents.update_progress(document_id, 5, "extracting_text", "Extracting text from document")
        text = self.extractor.extract(source_path.read_bytes(), mime_type)
        if len(text.strip()) < MIN_TEXT_LENGTH:
            raise EmptyDocument("Extracted text is too short or empty")
        if len(text) > LARGE_TEXT_WARNING:
            logger.warning("Document %s has very large text: %s chars", document_id, len(text))
        self.documents.save_extracted_text(document_id, text)

        self.documents.update_progress(document_id, 20, "preparing_tts", "Preparing text-to-speech conversion")

        def on_progress(index: int, total: int, status: ChunkStatus) -> None:
            self.documents.update_progress(
                document_id,
                tts_progress(index, total, status),
                "tts_processing",
                f"Converting chunk {index + 1}/{total} ({status.value})",
            )

        result = self.synthesizer.convert(text, on_progress=on_progress)

        self.documents.update_progress(document_id, 90, "saving_data", "Saving audio files")
        persisted = self.storage.persist_audio(document_id, result, metadata={"title": title})

        self.documents.mark_completed(
            document_id,
            mp3_path=str(persisted["mp3_path"]),
            flac_path=self._as_str(persisted.get("flac_path")),
            duration_seconds=result.duration_seconds,
            success_rate=result.success_rate,
        )

    @staticmethod
    def _as_str(value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None
