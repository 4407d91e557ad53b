from __future__ import annotations

import logging
import subprocess
import wave
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from docspeech.errors import TranscodeFailure

logger = logging.getLogger(__name__)

MP3_BITRATE = "128k"


class AudioTranscoder(Protocol):
    def resample_pcm(
        self,
        src: Path,
        dst: Path,
        *,
        in_rate: int = 24000,
        in_channels: int = 1,
        out_rate: int = 44100,
        out_channels: int = 2,
    ) -> Path: ...

    def transcode(
        self,
        src: Path,
        dst: Path,
        *,
        codec: str | None = None,
        bitrate: str | None = None,
        sample_rate: int | None = None,
        channels: int | None = None,
    ) -> Path: ...

    def concat(self, list_file: Path, dst: Path, *, codec: str, bitrate: str | None = None) -> Path: ...

    def probe_duration(self, path: Path) -> float: ...


def write_concat_list(paths: Iterable[Path], dst: Path) -> Path:
    lines = []
    for path in paths:
        escaped = str(Path(path).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    dst.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return dst


def write_wav_from_pcm(
    pcm: bytes,
    dst: Path,
    *,
    sample_rate: int = 24000,
    channels: int = 1,
    sample_width: int = 2,
) -> Path:
    dst.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(dst), "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return dst


class FfmpegTranscoder:
    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe") -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def resample_pcm(
        self,
        src: Path,
        dst: Path,
        *,
        in_rate: int = 24000,
        in_channels: int = 1,
        out_rate: int = 44100,
        out_channels: int = 2,
    ) -> Path:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "s16le",
            "-ar",
            str(in_rate),
            "-ac",
            str(in_channels),
            "-i",
            str(src),
            "-ar",
            str(out_rate),
            "-ac",
            str(out_channels),
            "-y",
            str(dst),
        ]
        self._run(cmd, dst)
        return dst

    def transcode(
        self,
        src: Path,
        dst: Path,
        *,
        codec: str | None = None,
        bitrate: str | None = None,
        sample_rate: int | None = None,
        channels: int | None = None,
    ) -> Path:
        cmd = [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-i", str(src)]
        cmd.extend(self._output_options(codec=codec, bitrate=bitrate, sample_rate=sample_rate, channels=channels))
        cmd.extend(["-y", str(dst)])
        self._run(cmd, dst)
        return dst

    def concat(self, list_file: Path, dst: Path, *, codec: str, bitrate: str | None = None) -> Path:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(list_file),
        ]
        cmd.extend(self._output_options(codec=codec, bitrate=bitrate))
        cmd.extend(["-y", str(dst)])
        self._run(cmd, dst)
        return dst

    def probe_duration(self, path: Path) -> float:
        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            logger.warning("ffprobe unavailable, duration=0: %s", exc)
            return 0.0
        if completed.returncode != 0:
            return 0.0
        try:
            return float(completed.stdout.strip())
        except ValueError:
            return 0.0

    @staticmethod
    def _output_options(
        *,
        codec: str | None = None,
        bitrate: str | None = None,
        sample_rate: int | None = None,
        channels: int | None = None,
    ) -> list[str]:
        options: list[str] = []
        if codec:
            options.extend(["-codec:a", codec])
        if bitrate:
            options.extend(["-b:a", bitrate])
        if sample_rate:
            options.extend(["-ar", str(sample_rate)])
        if channels:
            options.extend(["-ac", str(channels)])
        return options

    @staticmethod
    def _run(cmd: list[str], dst: Path) -> None:
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise TranscodeFailure(f"Executable not found: {cmd[0]}", missing_executable=True) from exc
        if completed.returncode != 0 or not dst.exists():
            stderr = completed.stderr.strip() or f"{cmd[0]} failed"
            raise TranscodeFailure(stderr[:2000])
