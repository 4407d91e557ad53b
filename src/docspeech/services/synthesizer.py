from __future__ import annotations

import base64
import binascii
import logging
import math
import re
import tempfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import httpx

from docspeech.errors import (
    BadRequest,
    DecodeFailure,
    EmptyResponse,
    PipelineAbort,
    RateLimited,
    ServerError,
    SynthesisError,
    Timeout,
    TranscodeFailure,
)
from docspeech.services.key_pool import KeyPool
from docspeech.services.transcoder import (
    MP3_BITRATE,
    AudioTranscoder,
    write_concat_list,
    write_wav_from_pcm,
)
from docspeech.types import (
    AbortReason,
    AudioSegment,
    ChunkOutcome,
    ChunkStatus,
    Completed,
    ConversionResult,
    Fatal,
    Skipped,
    TextChunk,
)
from docspeech.utils.chunker import build_chunks
from docspeech.utils.normalizer import optimize_for_speech, sanitize

logger = logging.getLogger(__name__)

DEFAULT_TTS_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash-preview-tts:generateContent"
)
DEFAULT_VOICE = "Kore"

ATTEMPTS_PER_KEY = 3
MAX_ATTEMPTS_CAP = 15
FORCE_ROTATE_EVERY = 3
SERVER_ERROR_DELAY_SECONDS = 5.0

MAX_CONSECUTIVE_FAILURES = 3
MIN_TOTAL_FAILURES = 5
TOTAL_FAILURE_RATIO = 0.3

PCM_MIME_TYPES = frozenset({"audio/l16", "audio/pcm"})
MP3_MIME_TYPES = frozenset({"audio/mp3", "audio/mpeg"})
WAV_HEADER_BYTES = 44
PCM_SAMPLE_RATE = 24000
OUTPUT_SAMPLE_RATE = 44100
OUTPUT_CHANNELS = 2

_RATE_PARAM_RE = re.compile(r"rate=(\d+)", re.IGNORECASE)

ProgressCallback = Callable[[int, int, ChunkStatus], None]


def max_total_failures(total_chunks: int) -> int:
    return max(MIN_TOTAL_FAILURES, math.ceil(TOTAL_FAILURE_RATIO * total_chunks))


def failure_counts(outcomes: Sequence[ChunkOutcome]) -> tuple[int, int]:
    """Return (consecutive, total) failures over the outcomes seen so far."""
    consecutive = 0
    total = 0
    for outcome in outcomes:
        if isinstance(outcome, Completed):
            consecutive = 0
        else:
            consecutive += 1
            total += 1
    return consecutive, total


def evaluate_abort(outcomes: Sequence[ChunkOutcome], total_chunks: int) -> AbortReason | None:
    consecutive, total = failure_counts(outcomes)
    if consecutive >= MAX_CONSECUTIVE_FAILURES:
        return AbortReason.TOO_MANY_CONSECUTIVE_FAILURES
    if total >= max_total_failures(total_chunks):
        return AbortReason.TOO_MANY_TOTAL_FAILURES
    return None


def adaptive_delay_ms(consecutive_failures: int, total_failures: int) -> int:
    return 200 + min(consecutive_failures * 500, 2000) + min(total_failures * 100, 1000)


class SpeechSynthesisOrchestrator:
    """Turns a document's text into one MP3 (and optionally FLAC) rendition.

    Chunks are synthesized strictly in order. Each chunk retries across the
    shared key pool; failed chunks are skipped until one of the abort
    thresholds is reached.
    """

    def __init__(
        self,
        key_pool: KeyPool,
        transcoder: AudioTranscoder,
        tts_url: str = DEFAULT_TTS_URL,
        *,
        voice_name: str = DEFAULT_VOICE,
        max_chunk_length: int = 500,
        connect_timeout_seconds: float = 30.0,
        timeout_seconds: float = 120.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        work_root: Path | None = None,
    ) -> None:
        self.key_pool = key_pool
        self.transcoder = transcoder
        self.tts_url = tts_url.rstrip("/")
        self.voice_name = voice_name
        self.max_chunk_length = max_chunk_length
        self.timeout = httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds)
        self.work_root = work_root
        self._transport = transport
        self._sleep = sleep

    def convert(self, text: str, on_progress: ProgressCallback | None = None) -> ConversionResult:
        prepared = optimize_for_speech(sanitize(text))
        chunks = build_chunks(prepared, self.max_chunk_length)
        if not chunks:
            raise PipelineAbort(AbortReason.EMPTY_INPUT, "No text left to synthesize after sanitization")

        total = len(chunks)
        logger.info("Starting TTS conversion: %s chars in %s chunks", len(prepared), total)

        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="docspeech_tts_", dir=self.work_root) as tmp:
            workdir = Path(tmp)
            segments = self._synthesize_chunks(chunks, workdir, on_progress)
            if not segments:
                raise PipelineAbort(AbortReason.ALL_CHUNKS_FAILED, "No audio segments were generated")
            return self._assemble(segments, workdir, total)

    def _synthesize_chunks(
        self,
        chunks: list[TextChunk],
        workdir: Path,
        on_progress: ProgressCallback | None,
    ) -> list[AudioSegment]:
        total = len(chunks)
        segments: list[AudioSegment] = []
        outcomes: list[ChunkOutcome] = []

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for chunk in chunks:
                chunk.status = ChunkStatus.PROCESSING
                self._notify(on_progress, chunk.index, total, chunk.status)

                outcome = self._process_chunk(client, chunk, workdir)
                outcomes.append(outcome)

                if isinstance(outcome, Completed):
                    chunk.status = ChunkStatus.COMPLETED
                    segments.append(AudioSegment(order=chunk.index, path=outcome.path))
                else:
                    chunk.status = ChunkStatus.FAILED
                self._notify(on_progress, chunk.index, total, chunk.status)

                if isinstance(outcome, Fatal):
                    logger.error("Aborting conversion at chunk %s: %s", chunk.index, outcome.reason)
                    raise outcome.error

                reason = evaluate_abort(outcomes, total)
                if reason is not None:
                    consecutive, failed = failure_counts(outcomes)
                    logger.error(
                        "Aborting conversion: %s (consecutive=%s total=%s of %s chunks)",
                        reason.value,
                        consecutive,
                        failed,
                        total,
                    )
                    raise PipelineAbort(
                        reason,
                        f"Too many failed chunks: {failed} failed, {consecutive} consecutive, "
                        f"after {len(outcomes)} of {total} chunks",
                    )

                if chunk.index < total - 1:
                    consecutive, failed = failure_counts(outcomes)
                    self._sleep(adaptive_delay_ms(consecutive, failed) / 1000.0)

        return segments

    def _process_chunk(self, client: httpx.Client, chunk: TextChunk, workdir: Path) -> ChunkOutcome:
        try:
            path = self.generate_audio_chunk_with_retry(client, chunk.text, workdir, index=chunk.index)
        except TranscodeFailure as exc:
            if exc.missing_executable:
                return Fatal(reason=str(exc), error=exc)
            logger.warning("Chunk %s skipped: %s", chunk.index, exc)
            return Skipped(reason=str(exc), error=exc)
        except SynthesisError as exc:
            logger.warning("Chunk %s skipped: %s", chunk.index, exc)
            return Skipped(reason=str(exc), error=exc)
        logger.info("Chunk %s synthesized (%s chars)", chunk.index, len(chunk.text))
        return Completed(path=path)

    def generate_audio_chunk_with_retry(
        self,
        client: httpx.Client,
        text: str,
        workdir: Path,
        *,
        index: int = 0,
    ) -> Path:
        max_attempts = min(len(self.key_pool) * ATTEMPTS_PER_KEY, MAX_ATTEMPTS_CAP)
        attempts = 0
        last_error: SynthesisError | None = None

        while attempts < max_attempts:
            key_index, api_key = self.key_pool.acquire()
            attempts += 1
            logger.debug("TTS request chunk=%s attempt=%s/%s key=%s", index, attempts, max_attempts, key_index)

            delay = 0.0
            rotated = False
            try:
                response = client.post(self.tts_url, params={"key": api_key}, json=self._payload(text))
            except httpx.TimeoutException as exc:
                last_error = Timeout(f"TTS request timed out: {exc}")
                delay = min(attempts + 2, 10)
            except httpx.HTTPError as exc:
                last_error = SynthesisError(f"TTS connection error: {exc}")
                delay = min(attempts + 2, 10)
            except Exception as exc:  # pylint: disable=broad-except
                last_error = SynthesisError(f"TTS request failed: {exc}")
                delay = min(2**attempts, 8)
            else:
                status = response.status_code
                if response.is_success:
                    try:
                        return self._save_audio(response, workdir, index, key_index)
                    except TranscodeFailure as exc:
                        if exc.missing_executable:
                            raise
                        last_error = exc
                    except SynthesisError as exc:
                        last_error = exc
                    except Exception as exc:  # pylint: disable=broad-except
                        last_error = SynthesisError(f"Failed to store audio for chunk {index}: {exc}")
                    delay = min(2**attempts, 8)
                elif status == 429:
                    last_error = RateLimited("TTS rate limit exceeded", status_code=status)
                    self.key_pool.mark_failed(key_index)
                    self.key_pool.rotate()
                    rotated = True
                    delay = min(attempts, 5)
                elif status >= 500:
                    last_error = ServerError(f"TTS server error ({status})", status_code=status)
                    delay = SERVER_ERROR_DELAY_SECONDS
                elif status == 400:
                    raise BadRequest(f"TTS bad request: {response.text[:400]}", status_code=status)
                else:
                    last_error = SynthesisError(
                        f"TTS request failed ({status}): {response.text[:400]}",
                        status_code=status,
                    )
                    delay = min(2**attempts, 8)

            logger.warning("TTS attempt %s for chunk %s failed: %s", attempts, index, last_error)
            if attempts >= max_attempts:
                break
            self._sleep(delay)
            if attempts % FORCE_ROTATE_EVERY == 0 and not rotated:
                self.key_pool.rotate()

        status_code = last_error.status_code if last_error is not None else None
        raise SynthesisError(
            f"Chunk {index} failed after {attempts} attempts: {last_error}",
            status_code=status_code,
        ) from last_error

    def _payload(self, text: str) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice_name}},
                },
            },
        }

    def _save_audio(self, response: httpx.Response, workdir: Path, index: int, key_index: int) -> Path:
        try:
            payload = response.json()
        except ValueError as exc:
            raise DecodeFailure("TTS response is not valid JSON") from exc

        mime_type, data = self._inline_audio(payload)
        try:
            audio = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeFailure(f"Failed to decode audio payload: {exc}") from exc
        if not audio:
            raise EmptyResponse("TTS response carried an empty audio payload")

        self.key_pool.record_usage(key_index)
        return self._write_segment(audio, mime_type, workdir, index)

    @staticmethod
    def _inline_audio(payload: object) -> tuple[str, str]:
        try:
            inline = payload["candidates"][0]["content"]["parts"][0]["inlineData"]  # type: ignore[index]
            mime_type = str(inline.get("mimeType") or "")
            data = inline.get("data")
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise EmptyResponse("TTS response has no inline audio data") from exc
        if not data:
            raise EmptyResponse("TTS response has no inline audio data")
        return mime_type, str(data)

    def _write_segment(self, audio: bytes, mime_type: str, workdir: Path, index: int) -> Path:
        base_mime = mime_type.split(";", 1)[0].strip().lower()
        target = workdir / f"segment_{index:05d}.wav"

        if base_mime in PCM_MIME_TYPES:
            rate_match = _RATE_PARAM_RE.search(mime_type)
            in_rate = int(rate_match.group(1)) if rate_match else PCM_SAMPLE_RATE
            raw_path = workdir / f"segment_{index:05d}.pcm"
            raw_path.write_bytes(audio)
            try:
                self.transcoder.resample_pcm(
                    raw_path,
                    target,
                    in_rate=in_rate,
                    in_channels=1,
                    out_rate=OUTPUT_SAMPLE_RATE,
                    out_channels=OUTPUT_CHANNELS,
                )
            except TranscodeFailure as exc:
                logger.warning("PCM resample failed for chunk %s, writing raw WAV: %s", index, exc)
                write_wav_from_pcm(audio, target, sample_rate=in_rate)
            finally:
                raw_path.unlink(missing_ok=True)
            return target

        if base_mime in MP3_MIME_TYPES:
            mp3_path = workdir / f"segment_{index:05d}.mp3"
            mp3_path.write_bytes(audio)
            try:
                self.transcoder.transcode(
                    mp3_path,
                    target,
                    sample_rate=OUTPUT_SAMPLE_RATE,
                    channels=OUTPUT_CHANNELS,
                )
            finally:
                mp3_path.unlink(missing_ok=True)
            return target

        if len(audio) < WAV_HEADER_BYTES:
            return write_wav_from_pcm(audio, target, sample_rate=PCM_SAMPLE_RATE)
        target.write_bytes(audio)
        return target

    def combine_audio_segments(self, segments: Sequence[AudioSegment], workdir: Path) -> Path:
        if not segments:
            raise SynthesisError("No audio segments to combine")
        ordered = sorted(segments, key=lambda segment: segment.order)
        output = workdir / "combined.mp3"
        if len(ordered) == 1:
            self.transcoder.transcode(ordered[0].path, output, codec="libmp3lame", bitrate=MP3_BITRATE)
            return output

        list_file = write_concat_list((segment.path for segment in ordered), workdir / "segments.txt")
        self.transcoder.concat(list_file, output, codec="libmp3lame", bitrate=MP3_BITRATE)
        return output

    def _assemble(self, segments: list[AudioSegment], workdir: Path, total_chunks: int) -> ConversionResult:
        mp3_path = self.combine_audio_segments(segments, workdir)
        duration = self.transcoder.probe_duration(mp3_path)
        flac = self._encode_flac(mp3_path, workdir)

        success_rate = len(segments) / total_chunks
        logger.info(
            "TTS conversion completed: %s/%s chunks (%.1f%%), duration=%.2fs, flac=%s",
            len(segments),
            total_chunks,
            success_rate * 100,
            duration,
            flac is not None,
        )
        return ConversionResult(
            mp3=mp3_path.read_bytes(),
            flac=flac,
            duration_seconds=duration,
            success_rate=success_rate,
            completed_chunks=len(segments),
            total_chunks=total_chunks,
        )

    def _encode_flac(self, mp3_path: Path, workdir: Path) -> bytes | None:
        flac_path = workdir / "combined.flac"
        try:
            self.transcoder.transcode(mp3_path, flac_path, codec="flac")
            return flac_path.read_bytes()
        except (TranscodeFailure, OSError) as exc:
            logger.warning("FLAC conversion failed, keeping MP3 only: %s", exc)
            return None

    @staticmethod
    def _notify(
        on_progress: ProgressCallback | None,
        index: int,
        total: int,
        status: ChunkStatus,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(index, total, status)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Progress callback failed for chunk %s: %s", index, exc)
