"""
Batch delivery: ZIP archive and print-ready PDF of framed images.
"""

import io
import zipfile
from typing import Iterable, List, Tuple

from PIL import Image as PILImage

from src.core.exceptions import ValidationError

PRINT_DPI = 300


def framed_filename(position: int) -> str:
    """1-based file name used inside archives."""
    return f"framed-{position}.jpg"


def build_zip(entries: Iterable[Tuple[str, bytes]]) -> bytes:
    """Pack (name, bytes) pairs into a DEFLATE-compressed ZIP."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return buffer.getvalue()


def build_pdf(images: List[bytes], dpi: int = PRINT_DPI) -> bytes:
    """One page per image, sized by the image's pixels at the given dpi."""
    if not images:
        raise ValidationError("No completed images to include in the PDF")

    pages = []
    for data in images:
        with PILImage.open(io.BytesIO(data)) as page:
            pages.append(page.convert("RGB"))

    buffer = io.BytesIO()
    pages[0].save(
        buffer,
        format="PDF",
        save_all=True,
        append_images=pages[1:],
        resolution=float(dpi),
    )
    return buffer.getvalue()
