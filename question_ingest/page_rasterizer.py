"""
Page Rasterizer

Converts an uploaded PDF or still image into page rasters.
PDF: PyMuPDF (fitz) renders every page to PNG at the requested scale.
Images: decoded with Pillow and returned as a single page at natural size.
"""

import base64
import binascii
import io
import logging
import re
from typing import List, Tuple, Union

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from question_ingest.errors import DecodeError
from question_ingest.state import PageImage

logger = logging.getLogger(__name__)

DEFAULT_SCALE = 3.0

DATA_URI_RE = re.compile(r'^data:([^;,]+)?(;base64)?,', re.IGNORECASE)
PDF_MAGIC = b"%PDF"


def decode_file_data(file_data: Union[bytes, str]) -> Tuple[bytes, str]:
    """
    Turn raw bytes, a base64 string or a data URI into bytes plus a mime hint.

    The mime hint is the data URI's type when present, otherwise sniffed from
    the leading bytes.
    """
    mime_type = ""
    if isinstance(file_data, str):
        payload = file_data.strip()
        match = DATA_URI_RE.match(payload)
        if match:
            mime_type = (match.group(1) or "").lower()
            payload = payload[match.end():]
        payload = re.sub(r'\s+', '', payload)
        if not payload:
            raise DecodeError("Empty or invalid base64 data")
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(
                "Invalid base64 encoding. Please ensure the file is properly base64 encoded."
            ) from e
    else:
        data = bytes(file_data)

    if not data:
        raise DecodeError("Uploaded file is empty")

    if not mime_type:
        mime_type = "application/pdf" if data.lstrip()[:4] == PDF_MAGIC else "image/*"
    return data, mime_type


def _image_to_page(data: bytes) -> List[PageImage]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode not in ("RGB", "RGBA", "L"):
                img = img.convert("RGB")
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
            width, height = img.size
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Unsupported or corrupt image file: {e}") from e

    logger.info(f"Detected image file, processing as single page ({width}x{height})")
    return [PageImage(page_number=1, image_bytes=buffer.getvalue(), width=width, height=height)]


def _pdf_to_pages(data: bytes, scale: float) -> List[PageImage]:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as e:  # FileDataError subclasses RuntimeError
        raise DecodeError(f"Corrupt or unsupported PDF document: {e}") from e

    pages = []
    with doc:
        if doc.page_count == 0:
            raise DecodeError("PDF document has no pages")
        matrix = fitz.Matrix(scale, scale)
        for index in range(doc.page_count):
            page = doc[index]
            pix = page.get_pixmap(matrix=matrix, alpha=False)
            pages.append(PageImage(
                page_number=index + 1,
                image_bytes=pix.tobytes("png"),
                width=pix.width,
                height=pix.height,
            ))
            logger.debug(f"Rendered page {index + 1}/{doc.page_count} at {pix.width}x{pix.height}")

    logger.info(f"Converted {len(pages)} PDF pages to images at scale {scale}")
    return pages


def rasterize(file_data: Union[bytes, str], scale: float = DEFAULT_SCALE) -> List[PageImage]:
    """
    Convert a PDF or image into page images, numbered 1..n in page order.

    Raises:
        DecodeError: the input could not be decoded as base64, PDF or image.
    """
    data, mime_type = decode_file_data(file_data)

    if mime_type.startswith("image/"):
        return _image_to_page(data)
    if mime_type == "application/pdf":
        return _pdf_to_pages(data, scale)
    raise DecodeError(f"Unsupported file type: {mime_type}")


def with_source(pages: List[PageImage], source: str, page_offset: int = 0) -> List[PageImage]:
    """Relabel pages (e.g. solution pages) and optionally shift their numbering."""
    return [
        page.model_copy(update={"source": source, "page_number": page.page_number + page_offset})
        for page in pages
    ]
