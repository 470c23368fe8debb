"""
Stamp Service
=============
Handles stamp embedding in PDF documents.

Uses PyPDF2 + reportlab for:
- Embedding PNG/JPEG stamp images at resolved positions
- Stamping several pages (or one page several times) in one request
- Supporting transparent PNG stamps

A request is all-or-nothing: every placement is resolved before the
first image is drawn, so a bad descriptor never yields a half-stamped PDF.
"""

import os
from collections import defaultdict
from io import BytesIO
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from core.logger import get_logger

from .exceptions import PlacementError, StampImageError
from .placement import PlacementDescriptor, ResolvedPlacement, parse_placements, resolve_placements
from .previews import PreviewStore

log = get_logger(__name__)

PNG_SIGNATURE = b"\x89PNG"
JPEG_SOI = b"\xff\xd8"


def detect_image_type(data: bytes) -> str:
    """Return 'png' or 'jpg' from the magic bytes, rejecting anything else."""
    if len(data) >= 8 and data[:4] == PNG_SIGNATURE:
        return "png"
    if len(data) >= 2 and data[:2] == JPEG_SOI:
        return "jpg"
    raise StampImageError("Only PNG or JPG stamp images are supported")


class StampService:
    """
    Service for embedding stamp images in PDF documents.

    Features:
    - Auto-detects PNG/JPEG stamps
    - Resolves page, size and position per placement descriptor
    - Draws all stamps for a page in a single overlay
    - Supports transparency
    """

    def __init__(self, preview_store: Optional[PreviewStore] = None):
        self.preview_store = preview_store

    def stamp_images(
        self,
        pdf_bytes: bytes,
        stamp_image_bytes: bytes,
        placements: Any,
    ) -> bytes:
        """
        Draw the stamp image at every placement.

        Args:
            pdf_bytes: Original PDF as bytes
            stamp_image_bytes: PNG or JPEG stamp
            placements: Placement descriptors (list, dict or JSON string)

        Returns:
            Stamped PDF as bytes

        Raises:
            StampImageError: missing input bytes or unsupported image format
            PlacementError: a placement could not be resolved (1-based position in message)
        """
        descriptors = self._coerce_placements(placements)
        if not descriptors:
            raise PlacementError("Missing stamp placements")
        if not stamp_image_bytes:
            raise StampImageError("Missing stamp image (PNG/JPG)")
        if not pdf_bytes:
            raise StampImageError("Missing PDF to stamp")

        image_type = detect_image_type(stamp_image_bytes)
        image = ImageReader(BytesIO(stamp_image_bytes))
        natural_size: Tuple[float, float] = tuple(float(v) for v in image.getSize())

        try:
            reader = PdfReader(BytesIO(pdf_bytes))
            pages = list(reader.pages)
        except PdfReadError as e:
            raise StampImageError(f"Could not read PDF: {e}") from e

        page_heights = [float(page.mediabox.height) for page in pages]
        resolved = resolve_placements(descriptors, page_heights, natural_size)

        by_page: Dict[int, List[ResolvedPlacement]] = defaultdict(list)
        for item in resolved:
            log.debug(
                f"Stamp on page {item.page_index}: x={item.x:.1f} y={item.y:.1f} "
                f"w={item.width:.1f} h={item.height:.1f}"
            )
            by_page[item.page_index].append(item)

        pdf_writer = PdfWriter()
        for index, page in enumerate(pages):
            if index in by_page:
                overlay = self._create_stamp_overlay(
                    page_size=(float(page.mediabox.width), float(page.mediabox.height)),
                    image=image,
                    placements=by_page[index],
                )
                page.merge_page(PdfReader(BytesIO(overlay)).pages[0])
            pdf_writer.add_page(page)

        output = BytesIO()
        pdf_writer.write(output)

        log.info(
            f"Stamped {len(resolved)} {image_type} image(s) on pages {sorted(by_page)}"
        )
        return output.getvalue()

    def stamp_preview(self, preview_id: str, stamp_image_bytes: bytes, placements: Any) -> bytes:
        """Stamp a previously stored preview PDF."""
        if self.preview_store is None:
            raise StampImageError("No preview store configured")
        return self.stamp_images(self.preview_store.load(preview_id), stamp_image_bytes, placements)

    @staticmethod
    def _coerce_placements(placements: Any) -> List[PlacementDescriptor]:
        if isinstance(placements, PlacementDescriptor):
            return [placements]
        if isinstance(placements, Sequence) and not isinstance(placements, (str, bytes)):
            return parse_placements(list(placements))
        return parse_placements(placements)

    def _create_stamp_overlay(
        self,
        page_size: Tuple[float, float],
        image: ImageReader,
        placements: List[ResolvedPlacement],
    ) -> bytes:
        """
        Create a single-page PDF holding just the stamp images.
        """
        buffer = BytesIO()
        c = canvas.Canvas(buffer, pagesize=page_size)
        for item in placements:
            c.drawImage(
                image,
                item.x, item.y,
                width=item.width,
                height=item.height,
                mask="auto",  # Enable transparency
            )
        c.save()
        return buffer.getvalue()


def stamp_images(pdf_bytes: bytes, stamp_image_bytes: bytes, placements: Any) -> bytes:
    """Stamp a PDF with the default service."""
    return StampService().stamp_images(pdf_bytes, stamp_image_bytes, placements)


def create_stamped_pdf(
    pdf_path: str,
    stamp_path: str,
    placements: Any,
    output_path: Optional[str] = None,
) -> str:
    """
    Convenience function to stamp a PDF file.

    Args:
        pdf_path: Path to input PDF
        stamp_path: Path to stamp image
        placements: Placement descriptors
        output_path: Path for output (default: adds _sealed suffix)

    Returns:
        Path to stamped PDF
    """
    with open(pdf_path, "rb") as f:
        pdf_bytes = f.read()
    with open(stamp_path, "rb") as f:
        stamp_bytes = f.read()

    stamped = StampService().stamp_images(pdf_bytes, stamp_bytes, placements)

    if not output_path:
        base, ext = os.path.splitext(pdf_path)
        output_path = f"{base}_sealed{ext}"

    with open(output_path, "wb") as f:
        f.write(stamped)

    return output_path
