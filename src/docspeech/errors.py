from __future__ import annotations

from docspeech.types import AbortReason, ProtectionType


class DocSpeechError(RuntimeError):
    """Base class for every error raised by the conversion pipeline."""

    retryable = True


class ExtractionError(DocSpeechError):
    retryable = False


class UnsupportedFormat(ExtractionError):
    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Unsupported file format: {mime_type}")
        self.mime_type = mime_type


class ProtectedDocument(ExtractionError):
    def __init__(self, protection_type: ProtectionType, message: str) -> None:
        super().__init__(message)
        self.protection_type = protection_type


class ParseFailure(ExtractionError):
    pass


class EmptyDocument(ExtractionError):
    pass


class SynthesisError(DocSpeechError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimited(SynthesisError):
    pass


class ServerError(SynthesisError):
    pass


class BadRequest(SynthesisError):
    pass


class Timeout(SynthesisError):
    pass


class EmptyResponse(SynthesisError):
    pass


class DecodeFailure(SynthesisError):
    pass


class TranscodeFailure(SynthesisError):
    def __init__(self, message: str, *, missing_executable: bool = False) -> None:
        super().__init__(message)
        self.missing_executable = missing_executable
        self.retryable = not missing_executable


class PipelineAbort(DocSpeechError):
    def __init__(self, reason: AbortReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.retryable = reason is not AbortReason.EMPTY_INPUT
