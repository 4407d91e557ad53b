import base64
import json
from pathlib import Path

import httpx
import pytest

from docspeech.errors import PipelineAbort, SynthesisError, TranscodeFailure
from docspeech.services.key_pool import KeyPool
from docspeech.services.synthesizer import (
    SpeechSynthesisOrchestrator,
    adaptive_delay_ms,
    evaluate_abort,
    max_total_failures,
)
from docspeech.types import AbortReason, AudioSegment, ChunkStatus, Completed, Skipped

PCM = b"\x00\x01" * 120


class FakeTranscoder:
    def __init__(self, *, flac_fails: bool = False, missing: bool = False) -> None:
        self.flac_fails = flac_fails
        self.missing = missing
        self.calls: list[tuple[str, str | None]] = []
        self.concat_lists: list[str] = []

    def resample_pcm(self, src: Path, dst: Path, **_: object) -> Path:
        self.calls.append(("resample", None))
        dst.write_bytes(b"RIFF" + src.read_bytes())
        return dst

    def transcode(self, src: Path, dst: Path, *, codec: str | None = None, **_: object) -> Path:
        if self.missing:
            raise TranscodeFailure("Executable not found: ffmpeg", missing_executable=True)
        if codec == "flac" and self.flac_fails:
            raise TranscodeFailure("flac encoder missing")
        self.calls.append(("transcode", codec))
        dst.write_bytes(f"{codec}:".encode() + src.read_bytes())
        return dst

    def concat(self, list_file: Path, dst: Path, *, codec: str, bitrate: str | None = None) -> Path:
        self.calls.append(("concat", codec))
        self.concat_lists.append(list_file.read_text(encoding="utf-8"))
        dst.write_bytes(b"concat-mp3")
        return dst

    def probe_duration(self, path: Path) -> float:
        return 3.5


def _audio(mime_type: str = "audio/L16;codec=pcm;rate=24000") -> httpx.Response:
    data = base64.b64encode(PCM).decode()
    return httpx.Response(
        200,
        json={"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": mime_type, "data": data}}]}}]},
    )


def _chunk_text(request: httpx.Request) -> str:
    return json.loads(request.content)["contents"][0]["parts"][0]["text"]


def _sentences(count: int) -> str:
    return " ".join(f"Sentence number {index}." for index in range(count))


def _orchestrator(
    handler,  # type: ignore[no-untyped-def]
    transcoder: FakeTranscoder,
    keys: list[str] | None = None,
    sleeps: list[float] | None = None,
    work_root: Path | None = None,
) -> SpeechSynthesisOrchestrator:
    recorded = sleeps if sleeps is not None else []
    return SpeechSynthesisOrchestrator(
        KeyPool(keys or ["key-one"]),
        transcoder,
        "https://tts.test/generate",
        max_chunk_length=20,
        transport=httpx.MockTransport(handler),
        sleep=recorded.append,
        work_root=work_root,
    )


def test_evaluate_abort_thresholds() -> None:
    done = Completed(path=Path("x.wav"))
    failed = Skipped(reason="boom")
    assert evaluate_abort([failed, failed, done, failed], 100) is None
    assert evaluate_abort([done, failed, failed, failed], 100) is AbortReason.TOO_MANY_CONSECUTIVE_FAILURES
    assert evaluate_abort([failed, done, failed, done, failed, done, failed, done, failed], 10) is (
        AbortReason.TOO_MANY_TOTAL_FAILURES
    )
    assert max_total_failures(10) == 5
    assert max_total_failures(100) == 30


def test_adaptive_delay() -> None:
    assert adaptive_delay_ms(0, 0) == 200
    assert adaptive_delay_ms(1, 2) == 200 + 500 + 200
    assert adaptive_delay_ms(10, 20) == 200 + 2000 + 1000


def test_convert_recovers_chunks_that_fail_once(tmp_path: Path) -> None:
    attempts: dict[str, int] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        text = _chunk_text(request)
        attempts[text] = attempts.get(text, 0) + 1
        if text in ("Sentence number 3.", "Sentence number 7.") and attempts[text] == 1:
            return httpx.Response(503, text="overloaded")
        return _audio()

    transcoder = FakeTranscoder()
    events: list[tuple[int, ChunkStatus]] = []
    work_root = tmp_path / "work"
    sleeps: list[float] = []
    orchestrator = _orchestrator(handler, transcoder, sleeps=sleeps, work_root=work_root)

    result = orchestrator.convert(_sentences(10), on_progress=lambda index, _, status: events.append((index, status)))

    assert result.success_rate == 1.0
    assert result.completed_chunks == 10
    assert result.total_chunks == 10
    assert result.duration_seconds == 3.5
    assert result.mp3 == b"concat-mp3"
    assert result.flac == b"flac:concat-mp3"
    assert attempts["Sentence number 3."] == 2
    assert 5.0 in sleeps

    lines = transcoder.concat_lists[0].splitlines()
    assert len(lines) == 10
    assert [line.rsplit("segment_", 1)[1][:5] for line in lines] == [f"{index:05d}" for index in range(10)]
    assert events[0] == (0, ChunkStatus.PROCESSING)
    assert events[-1] == (9, ChunkStatus.COMPLETED)
    assert list(work_root.iterdir()) == []


def test_convert_aborts_after_three_consecutive_failures() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(_chunk_text(request))
        return httpx.Response(400, text="bad request")

    with pytest.raises(PipelineAbort) as excinfo:
        _orchestrator(handler, FakeTranscoder()).convert(_sentences(6))

    assert excinfo.value.reason is AbortReason.TOO_MANY_CONSECUTIVE_FAILURES
    assert requested == ["Sentence number 0.", "Sentence number 1.", "Sentence number 2."]


def test_single_segment_is_transcoded_without_concat() -> None:
    transcoder = FakeTranscoder()
    result = _orchestrator(lambda _: _audio(), transcoder).convert("Only one.")

    assert ("concat", "libmp3lame") not in transcoder.calls
    assert ("transcode", "libmp3lame") in transcoder.calls
    assert result.mp3.startswith(b"libmp3lame:RIFF")


def test_combine_orders_segments(tmp_path: Path) -> None:
    transcoder = FakeTranscoder()
    orchestrator = _orchestrator(lambda _: _audio(), transcoder)
    segments = [AudioSegment(order=1, path=tmp_path / "b.wav"), AudioSegment(order=0, path=tmp_path / "a.wav")]

    orchestrator.combine_audio_segments(segments, tmp_path)

    lines = transcoder.concat_lists[0].splitlines()
    assert lines[0].endswith("a.wav'")
    assert lines[1].endswith("b.wav'")


def test_flac_failure_keeps_mp3() -> None:
    result = _orchestrator(lambda _: _audio(), FakeTranscoder(flac_fails=True)).convert("Only one.")
    assert result.mp3
    assert result.flac is None


def test_empty_input_aborts() -> None:
    with pytest.raises(PipelineAbort) as excinfo:
        _orchestrator(lambda _: _audio(), FakeTranscoder()).convert("  \x00 \r\n ")
    assert excinfo.value.reason is AbortReason.EMPTY_INPUT
    assert not excinfo.value.retryable


def test_all_chunks_failed() -> None:
    with pytest.raises(PipelineAbort) as excinfo:
        _orchestrator(lambda _: httpx.Response(400), FakeTranscoder()).convert("Only one.")
    assert excinfo.value.reason is AbortReason.ALL_CHUNKS_FAILED


def test_rate_limit_marks_key_and_rotates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["key"] == "key-one":
            return httpx.Response(429)
        return _audio()

    sleeps: list[float] = []
    orchestrator = _orchestrator(handler, FakeTranscoder(), keys=["key-one", "key-two"], sleeps=sleeps)
    result = orchestrator.convert("Only one.")

    assert result.success_rate == 1.0
    assert orchestrator.key_pool.is_cooling_down(0)
    assert orchestrator.key_pool.current_index == 1
    assert orchestrator.key_pool.usage(1) == 1
    assert sleeps == [1]


def test_retry_budget_exhausted(tmp_path: Path) -> None:
    calls: list[int] = []

    def handler(_: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(500)

    sleeps: list[float] = []
    orchestrator = _orchestrator(handler, FakeTranscoder(), sleeps=sleeps)
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SynthesisError) as excinfo:
            orchestrator.generate_audio_chunk_with_retry(client, "Hello.", tmp_path)

    assert len(calls) == 3
    assert sleeps == [5.0, 5.0]
    assert excinfo.value.status_code == 500


def test_malformed_response_is_retried(tmp_path: Path) -> None:
    responses = iter([httpx.Response(200, json={"candidates": []}), _audio()])
    sleeps: list[float] = []
    orchestrator = _orchestrator(lambda _: next(responses), FakeTranscoder(), sleeps=sleeps)

    with httpx.Client(transport=httpx.MockTransport(lambda _: next(responses))) as client:
        path = orchestrator.generate_audio_chunk_with_retry(client, "Hello.", tmp_path)

    assert path.exists()
    assert sleeps == [2]


def test_missing_executable_stops_conversion() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(_chunk_text(request))
        return _audio("audio/mpeg")

    with pytest.raises(TranscodeFailure) as excinfo:
        _orchestrator(handler, FakeTranscoder(missing=True)).convert(_sentences(4))
    assert excinfo.value.missing_executable
    assert requested == ["Sentence number 0."]


def test_progress_callback_errors_are_ignored() -> None:
    def explode(*_: object) -> None:
        raise RuntimeError("ui went away")

    result = _orchestrator(lambda _: _audio(), FakeTranscoder()).convert("Only one.", on_progress=explode)
    assert result.completed_chunks == 1


def test_request_decoding_error_is_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            raise httpx.DecodingError("truncated gzip body", request=request)
        return _audio()

    sleeps: list[float] = []
    result = _orchestrator(handler, FakeTranscoder(), sleeps=sleeps).convert(_sentences(1))

    assert result.success_rate == 1.0
    assert len(calls) == 2
    assert sleeps == [3]


class DiskFullOnceTranscoder(FakeTranscoder):
    def __init__(self) -> None:
        super().__init__()
        self.failed = False

    def resample_pcm(self, src: Path, dst: Path, **kwargs: object) -> Path:
        if not self.failed:
            self.failed = True
            raise OSError(28, "No space left on device")
        return super().resample_pcm(src, dst, **kwargs)


def test_unexpected_error_while_saving_audio_is_retried() -> None:
    sleeps: list[float] = []
    result = _orchestrator(lambda _: _audio(), DiskFullOnceTranscoder(), sleeps=sleeps).convert(_sentences(1))

    assert result.success_rate == 1.0
    assert sleeps == [2]


def test_unexpected_errors_count_toward_abort() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.TooManyRedirects("redirect loop", request=request)

    with pytest.raises(PipelineAbort) as excinfo:
        _orchestrator(handler, FakeTranscoder()).convert(_sentences(6))
    assert excinfo.value.reason is AbortReason.TOO_MANY_CONSECUTIVE_FAILURES


def test_timeouts_back_off_and_clean_up_work_dir(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow upstream", request=request)

    sleeps: list[float] = []
    work_root = tmp_path / "work"
    orchestrator = _orchestrator(handler, FakeTranscoder(), sleeps=sleeps, work_root=work_root)

    with pytest.raises(PipelineAbort) as excinfo:
        orchestrator.convert("Only one.")

    assert excinfo.value.reason is AbortReason.ALL_CHUNKS_FAILED
    assert sleeps == [3, 4]
    assert list(work_root.iterdir()) == []


def test_key_is_rotated_every_third_attempt(tmp_path: Path) -> None:
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request.url.params["key"])
        return httpx.Response(503)

    orchestrator = _orchestrator(handler, FakeTranscoder(), keys=["key-one", "key-two"])
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SynthesisError):
            orchestrator.generate_audio_chunk_with_retry(client, "Hello.", tmp_path)

    assert used == ["key-one"] * 3 + ["key-two"] * 3


def test_rate_limit_on_third_attempt_rotates_once(tmp_path: Path) -> None:
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        used.append(request.url.params["key"])
        if len(used) == 3:
            return httpx.Response(429)
        if len(used) == 4:
            return _audio()
        return httpx.Response(503)

    orchestrator = SpeechSynthesisOrchestrator(
        KeyPool(["key-one", "key-two"], cooldown_seconds=0),
        FakeTranscoder(),
        "https://tts.test/generate",
        sleep=lambda _: None,
    )
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        path = orchestrator.generate_audio_chunk_with_retry(client, "Hello.", tmp_path)

    assert path.exists()
    assert used == ["key-one", "key-one", "key-one", "key-two"]
    assert orchestrator.key_pool.current_index == 1
