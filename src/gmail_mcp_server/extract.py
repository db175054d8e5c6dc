"""Text extraction from email attachments (PDF, DOCX, plain text).

Extraction is read-only text recovery: embedded scripts, macros and other
active content are never evaluated. Size limits are enforced before any
decoding so oversized or decompression-bomb inputs are rejected early.
"""

import io
import logging
import zipfile
from typing import Callable, Optional

import docx
from charset_normalizer import from_bytes
from docx.opc.exceptions import PackageNotFoundError
from lxml.etree import XMLSyntaxError
from pypdf import PdfReader

from .errors import ContentTooLarge, CorruptDocument, UnsupportedFormat

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME = "text/plain"

# DOCX is compressed; allow its XML to expand this much past the raw limit.
DOCX_EXPANSION_FACTOR = 20

Decoder = Callable[[bytes, int], str]


def _decode_pdf(data: bytes, size_limit: int) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            # Many PDFs are "encrypted" with an empty user password.
            if not reader.decrypt(""):
                raise CorruptDocument("PDF is password protected")
        pages = [page.extract_text() or "" for page in reader.pages]
    except CorruptDocument:
        raise
    except Exception as e:
        # pypdf surfaces malformed object graphs as arbitrary built-in errors.
        raise CorruptDocument(f"Failed to extract text from PDF: {e}") from e
    return "\n\n".join(p.strip() for p in pages if p.strip())


def _decode_docx(data: bytes, size_limit: int) -> str:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            info = archive.getinfo("word/document.xml")
    except zipfile.BadZipFile as e:
        raise CorruptDocument(f"DOCX is not a valid zip archive: {e}") from e
    except KeyError as e:
        raise CorruptDocument("DOCX archive has no word/document.xml") from e

    max_expanded = size_limit * DOCX_EXPANSION_FACTOR
    if info.file_size > max_expanded:
        raise ContentTooLarge(
            f"DOCX document body expands to {info.file_size} bytes (limit {max_expanded})",
            size=info.file_size,
            limit=max_expanded,
        )

    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError, XMLSyntaxError) as e:
        raise CorruptDocument(f"Failed to open DOCX: {e}") from e
    except Exception as e:
        # Packages with malformed parts fail deep inside the OPC reader.
        raise CorruptDocument(f"DOCX package is malformed: {e}") from e
    return "\n".join(paragraph.text for paragraph in document.paragraphs).strip()


def _decode_text(data: bytes, size_limit: int) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    best = from_bytes(data).best()
    if best is None:
        raise CorruptDocument("Could not detect the text encoding")
    return str(best)


class TextExtractor:
    """Dispatches attachment bytes to a format decoder by MIME type.

    When the declared MIME type is generic the filename extension and then
    the leading bytes are used to pick a decoder.
    """

    def __init__(self):
        self._decoders: dict[str, Decoder] = {}
        self._extensions: dict[str, str] = {}
        self.register(PDF_MIME, _decode_pdf, [".pdf"])
        self.register(DOCX_MIME, _decode_docx, [".docx"])
        self.register(TEXT_MIME, _decode_text, [".txt", ".text", ".log", ".csv", ".md"])

    def register(self, mime_type: str, decoder: Decoder, extensions: list[str] | None = None) -> None:
        self._decoders[mime_type] = decoder
        for ext in extensions or []:
            self._extensions[ext.lower()] = mime_type

    def detect(self, mime_type: str, filename: str = "", data: bytes = b"") -> Optional[str]:
        """Resolve the MIME type a decoder is registered for, or None."""
        base_type = (mime_type or "").split(";")[0].strip().lower()
        if base_type in self._decoders:
            return base_type
        lower_name = filename.lower()
        for ext, ext_mime in self._extensions.items():
            if lower_name.endswith(ext):
                return ext_mime
        if data.startswith(b"%PDF-"):
            return PDF_MIME
        if data.startswith(b"PK\x03\x04") and b"word/document.xml" in data[:65536]:
            return DOCX_MIME
        return None

    def is_extractable(self, mime_type: str, filename: str = "") -> bool:
        return self.detect(mime_type, filename) is not None

    def extract_text(
        self,
        mime_type: str,
        data: bytes,
        size_limit: int,
        filename: str = "",
    ) -> str:
        if len(data) > size_limit:
            raise ContentTooLarge(
                f"Attachment is {len(data)} bytes, limit is {size_limit}",
                size=len(data),
                limit=size_limit,
            )
        resolved = self.detect(mime_type, filename, data)
        if resolved is None:
            raise UnsupportedFormat(f"Unsupported file type: {mime_type}", mime_type=mime_type)
        logger.debug(f"Extracting text from {filename or 'attachment'} as {resolved}")
        return self._decoders[resolved](data, size_limit)


default_extractor = TextExtractor()


def extract_text(mime_type: str, data: bytes, size_limit: int, filename: str = "") -> str:
    """Extract text with the default extractor."""
    return default_extractor.extract_text(mime_type, data, size_limit, filename)
