from __future__ import annotations

import atexit
import hmac
import logging
from pathlib import Path

from fastmcp import FastMCP
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response

from docspeech.config import Settings, load_settings
from docspeech.db.database import Database
from docspeech.db.documents import DocumentsRepository
from docspeech.mcp_tools import ToolRegistry
from docspeech.services.content_filter import ImportantTextFilter
from docspeech.services.extractor import DocumentTextExtractor
from docspeech.services.key_pool import KeyPool
from docspeech.services.storage import StorageService
from docspeech.services.synthesizer import SpeechSynthesisOrchestrator
from docspeech.services.transcoder import FfmpegTranscoder
from docspeech.utils.byte_range import RangeNotSatisfiable, parse_byte_range
from docspeech.worker import BackgroundWorker

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger(__name__)

AUDIO_MEDIA_TYPES = {"mp3": "audio/mpeg", "flac": "audio/flac"}


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.database = Database(settings.database_path)
        self.documents = DocumentsRepository(self.database)
        self.storage = StorageService(settings.data_dir)

        self.tts_keys = KeyPool(settings.tts_api_keys, cooldown_seconds=settings.key_cooldown_seconds)
        self.filter_keys: KeyPool | None
        if not settings.filter_api_keys:
            self.filter_keys = None
        elif settings.filter_api_keys == settings.tts_api_keys:
            self.filter_keys = self.tts_keys
        else:
            self.filter_keys = KeyPool(settings.filter_api_keys, cooldown_seconds=settings.key_cooldown_seconds)

        self.transcoder = FfmpegTranscoder(settings.ffmpeg_path, settings.ffprobe_path)
        self.extractor = DocumentTextExtractor(
            ImportantTextFilter(self.filter_keys, settings.filter_url),
            pdftotext_path=settings.pdftotext_path,
            pdftk_path=settings.pdftk_path,
        )
        self.synthesizer = SpeechSynthesisOrchestrator(
            self.tts_keys,
            self.transcoder,
            settings.tts_url,
            voice_name=settings.voice_name,
            max_chunk_length=settings.tts_max_chunk_length,
            work_root=settings.data_dir / "_work",
        )

        self.worker = BackgroundWorker(
            documents=self.documents,
            extractor=self.extractor,
            synthesizer=self.synthesizer,
            storage=self.storage,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_attempts=settings.max_attempts,
        )

    @property
    def key_pools(self) -> dict[str, KeyPool]:
        pools = {"tts": self.tts_keys}
        if self.filter_keys is not None and self.filter_keys is not self.tts_keys:
            pools["filter"] = self.filter_keys
        return pools

    def close(self) -> None:
        self.worker.stop()
        self.database.close()


def _authorized(request: Request, api_key: str | None) -> bool:
    if not api_key:
        return True
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(token.strip(), api_key)


def audio_response(path: Path, media_type: str, range_header: str | None) -> Response:
    size = path.stat().st_size
    headers = {"Accept-Ranges": "bytes"}
    try:
        byte_range = parse_byte_range(range_header, size)
    except RangeNotSatisfiable:
        headers["Content-Range"] = f"bytes */{size}"
        return Response(status_code=416, headers=headers)

    if byte_range is None:
        return FileResponse(path, media_type=media_type, headers=headers)

    with path.open("rb") as stream:
        stream.seek(byte_range.start)
        body = stream.read(byte_range.length)
    headers["Content-Range"] = byte_range.content_range(size)
    return Response(body, status_code=206, media_type=media_type, headers=headers)


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="docspeech")

    tools = ToolRegistry(
        runtime.documents,
        runtime.storage,
        runtime.key_pools,
        audio_path=runtime.settings.audio_path,
    )
    tools.register(mcp)

    @mcp.custom_route(runtime.settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "worker_running": runtime.worker.is_running,
                "db_path": str(runtime.settings.database_path),
                "mcp_path": runtime.settings.mcp_path,
                "documents": runtime.documents.count_by_status(),
            }
        )

    @mcp.custom_route(f"{runtime.settings.audio_path}/{{filename}}", methods=["GET"])
    async def audio(request: Request) -> Response:
        if not _authorized(request, runtime.settings.api_key):
            return JSONResponse({"error": "unauthorized"}, status_code=401)

        document_id, _, fmt = str(request.path_params["filename"]).rpartition(".")
        media_type = AUDIO_MEDIA_TYPES.get(fmt.lower())
        if not document_id or media_type is None:
            return JSONResponse(
                {"error": "unsupported_format", "supported_formats": list(AUDIO_MEDIA_TYPES)},
                status_code=400,
            )

        document = runtime.documents.get(document_id)
        if document is None or document.get("status") != "completed":
            return JSONResponse({"error": "audio_not_found", "document_id": document_id}, status_code=404)

        stored = document.get(f"{fmt.lower()}_path")
        if not stored or not Path(str(stored)).is_file():
            return JSONResponse({"error": "audio_not_found", "document_id": document_id}, status_code=404)

        return await run_in_threadpool(audio_response, Path(str(stored)), media_type, request.headers.get("range"))

    return mcp


def cli() -> None:
    settings = load_settings()
    runtime = AppRuntime(settings)
    runtime.worker.start()
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting MCP server on %s:%s%s", settings.host, settings.port, settings.mcp_path)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
