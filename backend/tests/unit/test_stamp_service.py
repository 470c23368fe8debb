"""
Stamp Service Tests
===================
Unit tests for stamping PNG/JPEG images onto PDF pages.
"""

import sys
from io import BytesIO
from pathlib import Path

import pytest
from PyPDF2 import PdfReader

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from services.document_automation.exceptions import PlacementError, PreviewError, StampImageError
from services.document_automation.previews import PreviewStore
from services.document_automation.stamp_service import (
    StampService,
    create_stamped_pdf,
    detect_image_type,
    stamp_images,
)


def xobjects_per_page(pdf_bytes: bytes):
    """Number of XObjects referenced from each page's resources."""
    counts = []
    for page in PdfReader(BytesIO(pdf_bytes)).pages:
        resources = page["/Resources"]
        counts.append(len(resources["/XObject"]) if "/XObject" in resources else 0)
    return counts


@pytest.fixture
def service():
    return StampService()


class TestDetectImageType:

    def test_png(self, png_stamp):
        assert detect_image_type(png_stamp) == "png"

    def test_jpeg(self, jpeg_stamp):
        assert detect_image_type(jpeg_stamp) == "jpg"

    @pytest.mark.parametrize("data", [b"GIF89a-----", b"\x89PNG", b"%PDF-1.4", b"\xff"])
    def test_rejects_other_formats(self, data):
        with pytest.raises(StampImageError, match="Only PNG or JPG"):
            detect_image_type(data)


class TestStampImages:

    def test_stamps_requested_pages_only(self, service, make_pdf, png_stamp):
        output = service.stamp_images(
            make_pdf(pages=3),
            png_stamp,
            [{"page": 0, "x": 10, "y": 10}, {"pageNumber": 3, "x": 50, "top": 50, "width": 100}],
        )
        reader = PdfReader(BytesIO(output))
        assert len(reader.pages) == 3
        counts = xobjects_per_page(output)
        assert counts[0] > 0
        assert counts[1] == 0
        assert counts[2] > 0

    def test_jpeg_stamp_and_json_placements(self, service, make_pdf, jpeg_stamp):
        output = service.stamp_images(make_pdf(pages=1), jpeg_stamp, '{"cx": 300, "cy": 400, "scale": 0.5}')
        assert xobjects_per_page(output)[0] > 0

    def test_same_page_multiple_times(self, service, make_pdf, png_stamp):
        output = service.stamp_images(
            make_pdf(pages=2),
            png_stamp,
            [{"x": 10, "y": 10}, {"x": 300, "y": 10}, {"page": 0, "x": 10, "top": 10}],
        )
        counts = xobjects_per_page(output)
        assert counts[0] > 0
        assert counts[1] == 0

    def test_page_size_preserved(self, service, make_pdf, png_stamp):
        output = service.stamp_images(make_pdf(pages=1, size=(500, 700)), png_stamp, [{"x": 1, "y": 1}])
        page = PdfReader(BytesIO(output)).pages[0]
        assert (float(page.mediabox.width), float(page.mediabox.height)) == (500, 700)

    def test_batch_is_atomic(self, service, make_pdf, png_stamp):
        placements = [{"x": 10, "y": 10}, {"x": 10}, {"x": 20, "y": 20}]
        with pytest.raises(PlacementError, match="Placement #2") as info:
            service.stamp_images(make_pdf(pages=1), png_stamp, placements)
        assert "y coordinate" in str(info.value)

    def test_page_out_of_range(self, service, make_pdf, png_stamp):
        with pytest.raises(PlacementError, match=r"document has 3 pages"):
            service.stamp_images(make_pdf(pages=3), png_stamp, [{"pageNumber": 99, "x": 1, "y": 1}])

    def test_requires_placements(self, service, make_pdf, png_stamp):
        with pytest.raises(PlacementError, match="Missing stamp placements"):
            service.stamp_images(make_pdf(), png_stamp, [])

    def test_requires_stamp(self, service, make_pdf):
        with pytest.raises(StampImageError, match="Missing stamp image"):
            service.stamp_images(make_pdf(), b"", [{"x": 1, "y": 1}])

    def test_requires_pdf(self, service, png_stamp):
        with pytest.raises(StampImageError, match="Missing PDF"):
            service.stamp_images(b"", png_stamp, [{"x": 1, "y": 1}])

    def test_unsupported_image(self, service, make_pdf):
        with pytest.raises(StampImageError, match="Only PNG or JPG"):
            service.stamp_images(make_pdf(), b"GIF89a-----", [{"x": 1, "y": 1}])

    def test_module_function(self, make_pdf, png_stamp):
        output = stamp_images(make_pdf(pages=1), png_stamp, [{"x": 1, "y": 1}])
        assert output.startswith(b"%PDF")


class TestPreviewStamping:

    def test_stamp_preview(self, tmp_path, make_pdf, png_stamp):
        store = PreviewStore(tmp_path)
        preview_id = store.save(make_pdf(pages=2))

        output = StampService(store).stamp_preview(preview_id, png_stamp, [{"page": 1, "x": 1, "y": 1}])
        counts = xobjects_per_page(output)
        assert counts[0] == 0
        assert counts[1] > 0

    def test_unknown_preview(self, tmp_path, png_stamp):
        with pytest.raises(PreviewError, match="Preview not found"):
            StampService(PreviewStore(tmp_path)).stamp_preview("abc123", png_stamp, [{"x": 1, "y": 1}])

    def test_no_store(self, png_stamp):
        with pytest.raises(StampImageError):
            StampService().stamp_preview("abc", png_stamp, [{"x": 1, "y": 1}])


class TestCreateStampedPdf:

    def test_writes_sealed_copy(self, tmp_path, make_pdf, png_stamp):
        pdf_path = tmp_path / "doc.pdf"
        stamp_path = tmp_path / "stamp.png"
        pdf_path.write_bytes(make_pdf(pages=1))
        stamp_path.write_bytes(png_stamp)

        output_path = create_stamped_pdf(str(pdf_path), str(stamp_path), [{"x": 1, "y": 1}])
        assert output_path == str(tmp_path / "doc_sealed.pdf")
        assert xobjects_per_page(Path(output_path).read_bytes())[0] > 0
