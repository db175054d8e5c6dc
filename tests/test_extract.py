"""Tests for attachment text extraction."""

import io
import zipfile
from unittest.mock import MagicMock

import docx
import pytest
from pypdf import PdfWriter

from gmail_mcp_server import extract as extract_module
from gmail_mcp_server.errors import ContentTooLarge, CorruptDocument, UnsupportedFormat
from gmail_mcp_server.extract import (
    DOCX_MIME,
    PDF_MIME,
    TEXT_MIME,
    TextExtractor,
    extract_text,
)

LIMIT = 1024 * 1024

DOCUMENT_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
    "<w:body>"
    "<w:p><w:r><w:t>Quarterly report</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>Revenue</w:t><w:tab/><w:t>up</w:t></w:r></w:p>"
    "</w:body></w:document>"
)


def make_docx(document_xml=DOCUMENT_XML):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        archive.writestr("word/document.xml", document_xml)
    return buf.getvalue()


def make_word_document(*paragraphs):
    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


def make_blank_pdf():
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class TestTextExtraction:
    """Tests for extract_text."""

    def test_plain_text_utf8(self):
        """Test UTF-8 text is returned verbatim."""
        assert extract_text(TEXT_MIME, "héllo wörld".encode("utf-8"), LIMIT) == "héllo wörld"

    def test_plain_text_other_encoding(self):
        """Test non-UTF-8 text is decoded via charset detection."""
        data = ("Ceci est un document en français, évidemment. " * 5).encode("latin-1")
        text = extract_text(TEXT_MIME, data, LIMIT)
        assert "français" in text

    def test_docx_paragraphs(self):
        """Test DOCX paragraphs and tabs are recovered."""
        data = make_word_document("Quarterly report", "Revenue\tup")
        text = extract_text(DOCX_MIME, data, LIMIT)
        assert text == "Quarterly report\nRevenue\tup"

    def test_docx_with_broken_package(self):
        """Test a zip with a document body but no OPC package parts is corrupt."""
        with pytest.raises(CorruptDocument):
            extract_text(DOCX_MIME, make_docx(), LIMIT)

    def test_docx_without_body(self):
        """Test a zip without word/document.xml is corrupt."""
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as archive:
            archive.writestr("other.xml", "<x/>")
        with pytest.raises(CorruptDocument):
            extract_text(DOCX_MIME, buf.getvalue(), LIMIT)

    def test_docx_not_a_zip(self):
        """Test garbage declared as DOCX is corrupt."""
        with pytest.raises(CorruptDocument):
            extract_text(DOCX_MIME, b"definitely not a zip", LIMIT)

    def test_docx_expansion_limit(self):
        """Test a highly compressible DOCX body is rejected by its expanded size."""
        body = "<w:p><w:r><w:t>" + "a" * 200_000 + "</w:t></w:r></w:p>"
        xml = DOCUMENT_XML.replace("<w:body>", "<w:body>" + body)
        data = make_docx(xml)
        assert len(data) < 10_000

        with pytest.raises(ContentTooLarge):
            extract_text(DOCX_MIME, data, 10_000)

    def test_blank_pdf(self):
        """Test a PDF without text yields an empty string."""
        assert extract_text(PDF_MIME, make_blank_pdf(), LIMIT) == ""

    def test_corrupt_pdf(self):
        """Test malformed PDF bytes raise CorruptDocument."""
        with pytest.raises(CorruptDocument):
            extract_text(PDF_MIME, b"this is not a pdf", LIMIT)

    def test_malformed_pdf_structure(self, monkeypatch):
        """Test arbitrary errors from a malformed object graph become CorruptDocument."""

        class BrokenReader:
            def __init__(self, stream):
                raise AttributeError("'NumberObject' object has no attribute 'items'")

        monkeypatch.setattr(extract_module, "PdfReader", BrokenReader)
        with pytest.raises(CorruptDocument):
            extract_text(PDF_MIME, b"%PDF-1.4\n", LIMIT)

    def test_unsupported_type(self):
        """Test unknown types raise UnsupportedFormat."""
        with pytest.raises(UnsupportedFormat):
            extract_text("image/png", b"\x89PNG\r\n\x1a\n", LIMIT, filename="photo.png")

    def test_too_large_rejected_before_decoding(self):
        """Test the size limit is enforced before any decoder runs."""
        extractor = TextExtractor()
        decoder = MagicMock(return_value="never")
        extractor.register("application/x-test", decoder)

        with pytest.raises(ContentTooLarge):
            extractor.extract_text("application/x-test", b"x" * 101, 100)
        decoder.assert_not_called()

    def test_oversized_unsupported_is_too_large(self):
        """Test size is checked even before format detection."""
        with pytest.raises(ContentTooLarge):
            extract_text("image/png", b"x" * 11, 10)


class TestFormatDetection:
    """Tests for TextExtractor.detect."""

    def test_mime_parameters_ignored(self):
        """Test charset parameters do not affect detection."""
        assert TextExtractor().detect("text/plain; charset=utf-8") == TEXT_MIME

    def test_generic_mime_uses_extension(self):
        """Test octet-stream attachments fall back to the filename extension."""
        extractor = TextExtractor()
        assert extractor.detect("application/octet-stream", "Report.PDF") == PDF_MIME
        assert extractor.detect("application/octet-stream", "notes.docx") == DOCX_MIME
        assert extractor.is_extractable("application/octet-stream", "readme.txt")

    def test_sniffs_pdf_header(self):
        """Test PDF content is recognised without MIME type or extension."""
        assert TextExtractor().detect("application/octet-stream", "blob", b"%PDF-1.7\n") == PDF_MIME

    def test_unknown(self):
        """Test unrecognised content resolves to None."""
        assert TextExtractor().detect("application/zip", "archive.zip", b"PK\x03\x04") is None
