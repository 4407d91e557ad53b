from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Literal, Union

DocumentStatus = Literal["pending", "processing", "completed", "failed"]
AudioFormat = Literal["wav", "mp3", "flac"]


class ChunkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProtectionType(str, Enum):
    NONE = "none"
    RC4_40BIT = "rc4_40bit"
    RC4_128BIT = "rc4_128bit"
    AES_128BIT = "aes_128bit"
    AES_256BIT = "aes_256bit"
    ENCRYPTED_UNKNOWN = "encrypted_unknown"
    PERMISSION_RESTRICTED = "permission_restricted"

    @property
    def is_encrypted(self) -> bool:
        return self not in (ProtectionType.NONE, ProtectionType.PERMISSION_RESTRICTED)


class AbortReason(str, Enum):
    TOO_MANY_CONSECUTIVE_FAILURES = "too_many_consecutive_failures"
    TOO_MANY_TOTAL_FAILURES = "too_many_total_failures"
    ALL_CHUNKS_FAILED = "all_chunks_failed"
    EMPTY_INPUT = "empty_input"


@dataclass(slots=True)
class TextChunk:
    index: int
    text: str
    status: ChunkStatus = ChunkStatus.PENDING


@dataclass(slots=True)
class AudioSegment:
    order: int
    path: Path
    format: AudioFormat = "wav"


@dataclass(frozen=True, slots=True)
class ConversionResult:
    mp3: bytes
    flac: bytes | None
    duration_seconds: float
    success_rate: float = 1.0
    completed_chunks: int = 0
    total_chunks: int = 0


@dataclass(slots=True)
class ProtectionInfo:
    is_protected: bool
    protection_type: ProtectionType
    error_message: str | None = None
    text: str | None = None


@dataclass(frozen=True, slots=True)
class Completed:
    path: Path


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: str
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class Fatal:
    reason: str
    error: Exception


ChunkOutcome = Union[Completed, Skipped, Fatal]
