import io
from pathlib import Path

import docx
import pytest
from pypdf import PdfWriter

from docspeech.errors import EmptyDocument, ParseFailure, ProtectedDocument, UnsupportedFormat
from docspeech.services.extractor import (
    DOCX_MIME,
    PDF_MIME,
    DocumentTextExtractor,
    classify_protection,
    guess_mime_type,
    scan_text_operators,
)
from docspeech.types import ProtectionType


def _extractor(tmp_path: Path, **kwargs) -> DocumentTextExtractor:  # type: ignore[no-untyped-def]
    kwargs.setdefault("alternate_parser", None)
    return DocumentTextExtractor(
        None,
        pdftotext_path=str(tmp_path / "missing-pdftotext"),
        pdftk_path=str(tmp_path / "missing-pdftk"),
        **kwargs,
    )


def _raise(message: str):  # type: ignore[no-untyped-def]
    def parser(_: bytes) -> str:
        raise RuntimeError(message)

    return parser


def test_classify_protection_by_encrypt_version() -> None:
    assert classify_protection(b"%PDF-1.7 /Encrypt 9 0 R << /Filter /Standard /V 5 /R 6 >>") is ProtectionType.AES_256BIT
    assert classify_protection(b"%PDF-1.4 /Encrypt 9 0 R << /V 2 /R 3 >>") is ProtectionType.RC4_128BIT
    assert classify_protection(b"%PDF-1.4 /Encrypt 9 0 R") is ProtectionType.ENCRYPTED_UNKNOWN
    assert classify_protection(b"%PDF-1.4 no dictionary here") is ProtectionType.PERMISSION_RESTRICTED


def test_scan_text_operators() -> None:
    content = "q BT /F1 12 Tf (Hello) Tj (World) Tj ET Q BT (Again) Tj ET"
    assert scan_text_operators(content) == "Hello World Again"


def test_guess_mime_type() -> None:
    assert guess_mime_type(Path("report.PDF")) == PDF_MIME
    assert guess_mime_type(Path("report.docx")) == DOCX_MIME


def test_unsupported_format(tmp_path: Path) -> None:
    with pytest.raises(UnsupportedFormat):
        _extractor(tmp_path).extract(b"hello", "text/plain")


def test_pdf_text_is_sanitized(tmp_path: Path) -> None:
    extractor = _extractor(tmp_path, pdf_parser=lambda _: "Hello\r\n\r\n\r\n\r\nWorld\x00")
    assert extractor.extract(b"%PDF-1.4 body", "application/pdf; charset=binary") == "Hello\n\nWorld"


def test_pdf_magic_bytes_required(tmp_path: Path) -> None:
    with pytest.raises(ParseFailure):
        _extractor(tmp_path, pdf_parser=lambda _: "text").extract(b"not a pdf", PDF_MIME)


def test_invalid_object_reference_without_pdftotext(tmp_path: Path) -> None:
    extractor = _extractor(tmp_path, pdf_parser=_raise("Invalid object reference 12 0 R"))
    with pytest.raises(ParseFailure):
        extractor.extract(b"%PDF-1.4 body", PDF_MIME)


def test_protected_pdf_recovered_by_alternate_library(tmp_path: Path) -> None:
    extractor = _extractor(
        tmp_path,
        pdf_parser=_raise("Secured pdf file are currently not supported"),
        alternate_parser=lambda _: "Recovered   text.",
    )
    assert extractor.extract(b"%PDF-1.6 /Encrypt << /V 4 >>", PDF_MIME) == "Recovered text."


def test_protected_pdf_reports_guidance(tmp_path: Path) -> None:
    extractor = _extractor(tmp_path, pdf_parser=_raise("File has not been decrypted: password required"))
    with pytest.raises(ProtectedDocument) as excinfo:
        extractor.extract(b"%PDF-1.7 /Encrypt 9 0 R << /V 5 /R 6 >>", PDF_MIME)
    assert excinfo.value.protection_type is ProtectionType.AES_256BIT
    assert "encrypted with a password" in str(excinfo.value)
    assert not excinfo.value.retryable


def test_permission_restricted_guidance(tmp_path: Path) -> None:
    extractor = _extractor(tmp_path, pdf_parser=_raise("protected document"))
    with pytest.raises(ProtectedDocument) as excinfo:
        extractor.extract(b"%PDF-1.7 plain", PDF_MIME)
    assert excinfo.value.protection_type is ProtectionType.PERMISSION_RESTRICTED
    assert "permission restrictions" in str(excinfo.value)


def test_password_protected_pdf_from_pypdf(tmp_path: Path) -> None:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    writer.encrypt(user_password="secret", owner_password="owner", algorithm="AES-256")
    buffer = io.BytesIO()
    writer.write(buffer)

    with pytest.raises(ProtectedDocument) as excinfo:
        _extractor(tmp_path).extract(buffer.getvalue(), PDF_MIME)
    assert excinfo.value.protection_type is ProtectionType.AES_256BIT


def test_docx_text(tmp_path: Path) -> None:
    document = docx.Document()
    document.add_paragraph("Laporan   ekonomi triwulan.")
    document.add_paragraph("Inflasi terkendali.")
    buffer = io.BytesIO()
    document.save(buffer)

    text = _extractor(tmp_path).extract(buffer.getvalue(), DOCX_MIME)
    assert text == "Laporan ekonomi triwulan.\nInflasi terkendali."


def test_empty_docx(tmp_path: Path) -> None:
    buffer = io.BytesIO()
    docx.Document().save(buffer)
    with pytest.raises(EmptyDocument):
        _extractor(tmp_path).extract(buffer.getvalue(), DOCX_MIME)


def test_corrupt_docx(tmp_path: Path) -> None:
    with pytest.raises(ParseFailure):
        _extractor(tmp_path).extract(b"\xd0\xcf\x11\xe0 legacy", "application/msword")
