"""Image preprocessing utilities.

Receipt photos are normalised before they are sent to the
extraction model: EXIF orientation is applied, colour is dropped and
the longest edge is capped. PDFs are rasterised to their first page with
PyMuPDF. Pillow does the image work.
"""

from __future__ import annotations

import logging
from io import BytesIO

import fitz  # PyMuPDF
from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"


def render_pdf_first_page(data: bytes) -> bytes:
    """Render page one of a PDF to PNG bytes.

    Raises ``ValueError`` when the PDF has no pages or PyMuPDF cannot
    read it.
    """
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.page_count < 1:
                raise ValueError("PDF has no pages")
            pix = doc.load_page(0).get_pixmap()
            return pix.tobytes("png")
    except RuntimeError as exc:  # fitz.FileDataError and other MuPDF failures
        logger.warning("[image] unreadable PDF: %s", exc)
        raise ValueError("PDF is damaged or not a PDF") from exc


def preprocess_image(image_data: bytes, max_size: int = 1280) -> bytes:
    """Preprocess an image for receipt extraction.

    Applies EXIF orientation, converts to grayscale and resizes the
    longest edge to ``max_size`` pixels keeping the aspect ratio.
    Bytes Pillow cannot decode are returned unchanged so the extraction
    model can still have a go at them.

    :param image_data: Raw image bytes
    :param max_size: Maximum size of the longest edge in pixels
    :returns: Processed image bytes in JPEG format
    """
    try:
        with Image.open(BytesIO(image_data)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("L")
            width, height = img.size
            max_dim = max(width, height)
            if max_dim > max_size:
                scale = max_size / float(max_dim)
                img = img.resize((int(width * scale), int(height * scale)))
            buf = BytesIO()
            img.save(buf, format="JPEG")
            return buf.getvalue()
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("[image] preprocessing skipped: %s", exc)
        return image_data


def prepare_for_extraction(data: bytes, mime_type: str) -> bytes:
    """Turn a stored upload into the JPEG bytes the model receives."""
    if mime_type == PDF_MIME:
        data = render_pdf_first_page(data)
    return preprocess_image(data)
