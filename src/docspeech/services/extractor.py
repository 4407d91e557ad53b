from __future__ import annotations

import io
import logging
import mimetypes
import re
import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path

import docx
import fitz
from pypdf import PasswordType, PdfReader
from pypdf.errors import PdfReadError

from docspeech.errors import (
    EmptyDocument,
    ExtractionError,
    ParseFailure,
    ProtectedDocument,
    UnsupportedFormat,
)
from docspeech.services.content_filter import ImportantTextFilter
from docspeech.types import ProtectionInfo, ProtectionType
from docspeech.utils.normalizer import sanitize

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOC_MIME = "application/msword"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
SUPPORTED_MIME_TYPES = frozenset({PDF_MIME, DOC_MIME, DOCX_MIME})

_SUFFIX_MIME_TYPES = {".pdf": PDF_MIME, ".doc": DOC_MIME, ".docx": DOCX_MIME}

PROTECTION_KEYWORDS = ("secured", "password", "encrypted", "protected")
PROBE_WINDOW_BYTES = 10_000

_ENCRYPT_VERSION_RE = re.compile(rb"/V\s*(\d+)")
_ENCRYPT_VERSIONS = {
    1: ProtectionType.RC4_40BIT,
    2: ProtectionType.RC4_128BIT,
    4: ProtectionType.AES_128BIT,
    5: ProtectionType.AES_256BIT,
}

_TEXT_BLOCK_RE = re.compile(r"BT\s+(.*?)\s+ET", re.DOTALL)
_STRING_LITERAL_RE = re.compile(r"\((.*?)\)")

PdfParser = Callable[[bytes], str]

GUIDANCE_BASE = "The uploaded PDF has security protection and cannot be processed automatically."
GUIDANCE_STEPS = (
    "Suggested solutions:",
    "1. Remove the PDF protection with a tool such as:",
    "   - Adobe Acrobat (Remove Security)",
    "   - PDFtk (command line tool)",
    "   - an online PDF unlock service",
    "",
    "2. Or convert it to another format:",
    "   - export as Word (.docx) and upload that file",
    "   - print to PDF without security",
    "   - rescan it as a regular PDF",
    "",
    "3. Or contact an administrator for manual processing.",
)
GUIDANCE_PERMISSION = (
    "Info: this PDF has permission restrictions but may still open normally. Try the steps above."
)
GUIDANCE_ENCRYPTED = "Info: this PDF is encrypted with a password. Remove the password before uploading."


def normalize_mime_type(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip().lower()


def guess_mime_type(path: Path) -> str:
    known = _SUFFIX_MIME_TYPES.get(path.suffix.lower())
    if known:
        return known
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or "application/octet-stream"


def parse_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    if reader.is_encrypted:
        try:
            decrypted = reader.decrypt("")
        except Exception as exc:  # pylint: disable=broad-except
            raise PdfReadError(f"PDF is encrypted and requires a password: {exc}") from exc
        if decrypted == PasswordType.NOT_DECRYPTED:
            raise PdfReadError("PDF is encrypted and requires a password")
    return "\n".join(page.extract_text() or "" for page in reader.pages)


def parse_pdf_with_pymupdf(data: bytes) -> str:
    with fitz.open(stream=data, filetype="pdf") as document:
        if document.needs_pass and not document.authenticate(""):
            raise ExtractionError("PyMuPDF could not open the protected PDF")
        text = "\n".join(page.get_text() for page in document)
    if not text.strip():
        raise ExtractionError("PyMuPDF returned no text")
    return text


def classify_protection(data: bytes) -> ProtectionType:
    head = data[:PROBE_WINDOW_BYTES]
    if b"/Encrypt" not in head:
        return ProtectionType.PERMISSION_RESTRICTED
    for match in _ENCRYPT_VERSION_RE.finditer(head):
        protection = _ENCRYPT_VERSIONS.get(int(match.group(1)))
        if protection is not None:
            return protection
    return ProtectionType.ENCRYPTED_UNKNOWN


def mentions_protection(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in PROTECTION_KEYWORDS)


def scan_text_operators(content: str) -> str:
    """Collect string literals shown between BT/ET operators of uncompressed PDF content."""
    pieces: list[str] = []
    for block in _TEXT_BLOCK_RE.findall(content):
        pieces.extend(_STRING_LITERAL_RE.findall(block))
    return " ".join(pieces).strip()


def protection_guidance(protection_type: ProtectionType) -> str:
    lines = list(GUIDANCE_STEPS)
    if protection_type is ProtectionType.PERMISSION_RESTRICTED:
        lines.extend(["", GUIDANCE_PERMISSION])
    elif protection_type.is_encrypted:
        lines.extend(["", GUIDANCE_ENCRYPTED])
    return GUIDANCE_BASE + "\n\n" + "\n".join(lines)


class DocumentTextExtractor:
    def __init__(
        self,
        content_filter: ImportantTextFilter | None = None,
        *,
        pdftotext_path: str = "pdftotext",
        pdftk_path: str = "pdftk",
        pdf_parser: PdfParser = parse_pdf,
        alternate_parser: PdfParser | None = parse_pdf_with_pymupdf,
    ) -> None:
        self.content_filter = content_filter
        self.pdftotext_path = pdftotext_path
        self.pdftk_path = pdftk_path
        self._pdf_parser = pdf_parser
        self._alternate_parser = alternate_parser

    def extract(self, data: bytes, mime_type: str) -> str:
        mime = normalize_mime_type(mime_type)
        try:
            raw_text = self._extract_raw(data, mime)
            clean_text = sanitize(raw_text)
            logger.info(
                "Text extracted: original_length=%s cleaned_length=%s",
                len(raw_text),
                len(clean_text),
            )
            if self.content_filter is None:
                return clean_text
            return self.content_filter.filter(clean_text)
        except ExtractionError as exc:
            logger.error("Text extraction failed: %s", exc)
            raise

    def extract_from_path(self, path: Path, mime_type: str | None = None) -> str:
        return self.extract(path.read_bytes(), mime_type or guess_mime_type(path))

    def _extract_raw(self, data: bytes, mime: str) -> str:
        if mime not in SUPPORTED_MIME_TYPES:
            raise UnsupportedFormat(mime)
        if mime == PDF_MIME:
            return self._extract_pdf(data)
        return self._extract_doc(data)

    def check_pdf_protection(self, data: bytes) -> ProtectionInfo:
        try:
            text = self._pdf_parser(data)
        except Exception as exc:  # pylint: disable=broad-except
            message = str(exc)
            if not mentions_protection(message):
                return ProtectionInfo(is_protected=False, protection_type=ProtectionType.NONE, error_message=message)
            return ProtectionInfo(
                is_protected=True,
                protection_type=classify_protection(data),
                error_message=message,
            )
        return ProtectionInfo(is_protected=False, protection_type=ProtectionType.NONE, text=text)

    def _extract_pdf(self, data: bytes) -> str:
        if not data.startswith(b"%PDF"):
            raise ParseFailure("File is not a valid PDF")

        info = self.check_pdf_protection(data)
        if info.is_protected:
            logger.warning(
                "Protected PDF detected: type=%s error=%s",
                info.protection_type.value,
                info.error_message,
            )
            return self._handle_protected_pdf(data, info)
        if info.text is not None:
            return info.text

        try:
            return self._pdf_parser(data)
        except Exception as exc:  # pylint: disable=broad-except
            if "invalid object reference" in str(exc).lower():
                logger.warning("PDF parser hit an invalid object reference, trying pdftotext")
                try:
                    return self._run_pdftotext(data)
                except ExtractionError as fallback_exc:
                    raise ParseFailure(f"PDF extraction failed: {fallback_exc}") from exc
            raise ParseFailure(f"PDF extraction failed: {exc}") from exc

    def _handle_protected_pdf(self, data: bytes, info: ProtectionInfo) -> str:
        strategies: list[tuple[str, PdfParser]] = [
            ("ocr", self._extract_with_ocr),
            ("alternate library", self._extract_with_alternate_library),
            ("external tools", self._extract_with_external_tools),
        ]
        for name, strategy in strategies:
            try:
                text = strategy(data)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Protected PDF strategy %s failed: %s", name, exc)
                continue
            logger.info("Protected PDF text recovered with %s", name)
            return text
        raise ProtectedDocument(info.protection_type, protection_guidance(info.protection_type))

    @staticmethod
    def _extract_with_ocr(data: bytes) -> str:
        raise ExtractionError("OCR extraction is not available")

    def _extract_with_alternate_library(self, data: bytes) -> str:
        if self._alternate_parser is None:
            raise ExtractionError("No alternate PDF library configured")
        return self._alternate_parser(data)

    def _extract_with_external_tools(self, data: bytes) -> str:
        try:
            return self._run_pdftotext(data)
        except ExtractionError as exc:
            logger.debug("pdftotext failed, trying pdftk: %s", exc)

        with tempfile.TemporaryDirectory(prefix="docspeech_pdf_") as tmp:
            source = Path(tmp) / "input.pdf"
            source.write_bytes(data)
            completed = self._run_tool([self.pdftk_path, str(source), "output", "-", "uncompress"], text=False)
        output = completed.stdout.decode("latin-1")
        if completed.returncode != 0 or not output.strip() or "Error" in output:
            raise ExtractionError("External tools failed or not available")
        text = scan_text_operators(output)
        if not text:
            raise ExtractionError("No text operators found in uncompressed PDF")
        return text

    def _run_pdftotext(self, data: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="docspeech_pdf_") as tmp:
            source = Path(tmp) / "input.pdf"
            source.write_bytes(data)
            completed = self._run_tool([self.pdftotext_path, str(source), "-"], text=True)
        output = completed.stdout
        if completed.returncode != 0 or not output.strip() or "Error" in output:
            raise ExtractionError(completed.stderr.strip() or "pdftotext returned no text")
        return output

    @staticmethod
    def _run_tool(cmd: list[str], *, text: bool) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, capture_output=True, text=text, check=False)
        except OSError as exc:
            raise ExtractionError(f"{cmd[0]} is not available: {exc}") from exc

    @staticmethod
    def _extract_doc(data: bytes) -> str:
        try:
            document = docx.Document(io.BytesIO(data))
        except Exception as exc:  # pylint: disable=broad-except
            raise ParseFailure(f"Failed to extract text from DOC: {exc}") from exc
        text = "\n".join(paragraph.text for paragraph in document.paragraphs)
        if not text.strip():
            raise EmptyDocument("Document appears to be empty")
        return text
