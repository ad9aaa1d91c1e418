"""
Split an uploaded PDF into single-page unit files.

The whole document is parsed and split in memory before anything is written,
so a malformed upload leaves no trace on disk. The split is built in a staging
directory and published in one rename; a reader either sees the complete
resource directory or none at all.
"""
import io
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from contentgate.exceptions import MalformedSource, NotFound
from contentgate.services import storage

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


@dataclass
class PaginationResult:
    resource_id: str
    unit_count: int
    original_size: int


def _open_reader(data: bytes) -> PdfReader:
    if not data or data.lstrip()[:5] != PDF_MAGIC:
        raise MalformedSource("File is not a PDF document.")
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted and not reader.decrypt(""):
            raise MalformedSource("Password-protected PDFs are not supported.")
        return reader
    except (PyPdfError, ValueError, KeyError, TypeError) as e:
        raise MalformedSource(f"Could not parse PDF: {e}") from e


def split_pages(data: bytes) -> list[bytes]:
    """Return one single-page PDF per page, in page order. Raises MalformedSource."""
    reader = _open_reader(data)
    units: list[bytes] = []
    try:
        for page in reader.pages:
            writer = PdfWriter()
            writer.add_page(page)
            buf = io.BytesIO()
            writer.write(buf)
            units.append(buf.getvalue())
    except (PyPdfError, ValueError, KeyError, TypeError) as e:
        raise MalformedSource(f"Could not split PDF: {e}") from e
    if not units:
        raise MalformedSource("PDF has no pages.")
    return units


def paginate(resource_id: str, data: bytes, title: str = "") -> PaginationResult:
    """
    Write original.pdf, unit_0001.pdf.. and manifest.json for resource_id.
    The returned unit_count comes from the document, not from the caller.
    """
    units = split_pages(data)
    final = storage.resource_dir(resource_id)
    staging = storage.staging_dir_for(final)
    try:
        (staging / storage.ORIGINAL_PDF).write_bytes(data)
        for number, unit_bytes in enumerate(units, start=1):
            (staging / storage.unit_filename(number)).write_bytes(unit_bytes)
        (staging / storage.RESOURCE_MANIFEST).write_text(
            json.dumps({"unit_count": len(units), "title": title})
        )
        storage.publish_directory(staging, final)
    except BaseException:
        storage.discard_directory(staging)
        raise
    logger.info("Paginated resource %s into %d units", resource_id, len(units))
    return PaginationResult(resource_id=resource_id, unit_count=len(units), original_size=len(data))


def unit_source_path(resource_id: str, unit: int) -> Path | None:
    return storage.first_existing(storage.unit_source_candidates(resource_id, unit))


def build_preview_document(resource_id: str, max_units: int) -> bytes:
    """Concatenate the first max_units unit files into one PDF."""
    writer = PdfWriter()
    for unit in range(1, max_units + 1):
        path = unit_source_path(resource_id, unit)
        if path is None:
            raise NotFound(f"Page {unit} file not found. The PDF may not be properly split.")
        for page in PdfReader(str(path)).pages:
            writer.add_page(page)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()
