from __future__ import annotations

import base64
import io
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union
from uuid import uuid4
from xml.etree import ElementTree as ET

from pypdf import PdfReader

from kku_assistant.config import DEFAULT_MAX_UPLOAD_BYTES
from kku_assistant.errors import ExtractionFailure, UnsupportedMediaType

PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME_TYPE = "text/plain"
IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
ALLOWED_MIME_TYPES = IMAGE_MIME_TYPES | {PDF_MIME_TYPE, DOCX_MIME_TYPE, TEXT_MIME_TYPE}

UPLOAD_DIR = Path("uploads")

PDF_PREFIX = "เนื้อหา PDF:\n"
DOCX_PREFIX = "เนื้อหาเอกสาร:\n"
TEXT_PREFIX = "เนื้อหาไฟล์:\n"

_WORD_NAMESPACE = {"w": "http://schemas.openxmlformats.org/wordprocessingml/2006/main"}


@dataclass
class ValidationResult:
    status: str
    message: str
    warnings: list[str]


@dataclass(frozen=True)
class StoredUpload:
    path: Path
    mime_type: str
    size: int
    original_filename: str


@dataclass(frozen=True)
class ExtractedImage:
    data: str
    mime_type: str


@dataclass(frozen=True)
class ExtractedText:
    content: str


ExtractedContent = Union[ExtractedImage, ExtractedText]


def normalize_mime_type(content_type: str | None) -> str:
    # "text/plain; charset=utf-8" -> "text/plain"
    return (content_type or "").split(";", 1)[0].strip().lower()


def validate_upload_header(
    filename: str,
    content_type: str | None,
    size: int | None,
    *,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> ValidationResult:
    """Check the declared media type, and the size when it is already known."""
    mime_type = normalize_mime_type(content_type)

    if mime_type not in ALLOWED_MIME_TYPES:
        return ValidationResult(
            status="error",
            message="ประเภทไฟล์ไม่รองรับ",
            warnings=[
                f"Unsupported media type '{mime_type or 'unknown'}' for '{filename or 'upload'}'. "
                "Supported types: JPEG, PNG, WEBP, PDF, DOCX, TXT."
            ],
        )

    if size is not None and size > max_bytes:
        return ValidationResult(
            status="error",
            message="File too large",
            warnings=[f"Upload is {size} bytes; the limit is {max_bytes} bytes."],
        )

    return ValidationResult(status="success", message="File accepted.", warnings=[])


def validate_upload(
    filename: str,
    content_type: str | None,
    content_bytes: bytes,
    *,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> ValidationResult:
    """Check an upload by its declared media type and size.

    The file content is never sniffed: a PNG declared as ``application/zip``
    is rejected and a text file declared as ``image/png`` is accepted.
    """
    result = validate_upload_header(filename, content_type, len(content_bytes), max_bytes=max_bytes)
    if result.status == "error":
        return result

    if not content_bytes:
        return ValidationResult(
            status="error",
            message="Empty uploads are not allowed.",
            warnings=[],
        )

    return result


@contextmanager
def stored_upload(
    filename: str,
    content_type: str | None,
    content_bytes: bytes,
    *,
    upload_dir: Path | None = None,
) -> Iterator[StoredUpload]:
    """Write an upload to temporary storage and remove it on every exit path."""
    target_dir = upload_dir or UPLOAD_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / uuid4().hex
    path.write_bytes(content_bytes)
    try:
        yield StoredUpload(
            path=path,
            mime_type=normalize_mime_type(content_type),
            size=len(content_bytes),
            original_filename=filename,
        )
    finally:
        path.unlink(missing_ok=True)


def read_pdf_text(path: Path) -> str:
    try:
        reader = PdfReader(io.BytesIO(path.read_bytes()))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
    except Exception as exc:  # noqa: BLE001
        raise ExtractionFailure(f"PDF text extraction failed: {exc}") from exc
    return "\n\n".join(page for page in pages if page)


def read_docx_text(path: Path) -> str:
    try:
        with zipfile.ZipFile(path) as archive:
            with archive.open("word/document.xml") as document_xml:
                xml_content = document_xml.read()
        root = ET.fromstring(xml_content)
    except (zipfile.BadZipFile, KeyError, ET.ParseError, OSError) as exc:
        raise ExtractionFailure(f"DOCX text extraction failed: {exc}") from exc

    paragraphs: list[str] = []
    for paragraph in root.findall(".//w:p", _WORD_NAMESPACE):
        runs = [node.text or "" for node in paragraph.findall(".//w:t", _WORD_NAMESPACE)]
        line = "".join(runs).strip()
        if line:
            paragraphs.append(line)
    return "\n\n".join(paragraphs)


def read_text_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        raise ExtractionFailure(f"Text file could not be read as UTF-8: {exc}") from exc


def read_image_base64(path: Path) -> str:
    try:
        return base64.b64encode(path.read_bytes()).decode("ascii")
    except OSError as exc:
        raise ExtractionFailure(f"Image could not be read: {exc}") from exc


def extract_file(upload: StoredUpload) -> ExtractedContent:
    mime_type = upload.mime_type
    if mime_type in IMAGE_MIME_TYPES:
        return ExtractedImage(data=read_image_base64(upload.path), mime_type=mime_type)
    if mime_type == PDF_MIME_TYPE:
        return ExtractedText(content=PDF_PREFIX + read_pdf_text(upload.path))
    if mime_type == DOCX_MIME_TYPE:
        return ExtractedText(content=DOCX_PREFIX + read_docx_text(upload.path))
    if mime_type == TEXT_MIME_TYPE:
        return ExtractedText(content=TEXT_PREFIX + read_text_file(upload.path))
    raise UnsupportedMediaType(f"No extractor for media type '{mime_type}'.")
