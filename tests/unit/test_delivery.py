import io
import zipfile

import pytest

from src.core.exceptions import ValidationError
from src.modules.framing.delivery import build_pdf, build_zip, framed_filename


def test_zip_entries_are_numbered(jpeg):
    images = [jpeg(40, 60), jpeg(40, 60, (10, 10, 10))]
    archive = build_zip((framed_filename(n), data) for n, data in enumerate(images, start=1))

    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        assert zf.namelist() == ["framed-1.jpg", "framed-2.jpg"]
        assert zf.read("framed-2.jpg") == images[1]
        assert zf.getinfo("framed-1.jpg").compress_type == zipfile.ZIP_DEFLATED


def test_pdf_is_generated(jpeg):
    document = build_pdf([jpeg(60, 90), jpeg(60, 90)])
    assert document.startswith(b"%PDF")


def test_pdf_requires_images():
    with pytest.raises(ValidationError):
        build_pdf([])
