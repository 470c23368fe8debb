"""
Pytest Configuration and Fixtures
==================================
Shared test fixtures for docgen tests.
"""

import sys
import zipfile
from io import BytesIO
from pathlib import Path
from typing import List, Sequence, Union

import pytest

# Add backend to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

CONTENT_TYPES = """<?xml version="1.0" encoding="UTF-8"?>
<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">
  <Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>
  <Default Extension="xml" ContentType="application/xml"/>
  <Default Extension="png" ContentType="image/png"/>
  <Override PartName="/word/document.xml" ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>
</Types>"""

PACKAGE_RELS = """<?xml version="1.0" encoding="UTF-8"?>
<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">
  <Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" Target="word/document.xml"/>
</Relationships>"""

MEDIA_BYTES = b"\x89PNG\r\n\x1a\n-not-really-an-image-"

Paragraph = Union[str, Sequence[str]]


def paragraph_xml(paragraph: Paragraph) -> str:
    """One <w:p>; a sequence of strings becomes one run per string."""
    runs = [paragraph] if isinstance(paragraph, str) else list(paragraph)
    body = "".join(
        f'<w:r><w:t xml:space="preserve">{text}</w:t></w:r>' for text in runs
    )
    return f"<w:p>{body}</w:p>"


def table_xml(rows: Sequence[Sequence[str]]) -> str:
    cells = lambda row: "".join(f"<w:tc>{paragraph_xml(text)}</w:tc>" for text in row)
    return "<w:tbl>" + "".join(f"<w:tr>{cells(row)}</w:tr>" for row in rows) + "</w:tbl>"


def build_docx(body_xml: str, extra_parts: dict = None) -> bytes:
    document = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<w:document xmlns:w="{W_NS}"><w:body>{body_xml}'
        '<w:sectPr><w:pgSz w:w="12240" w:h="15840"/></w:sectPr>'
        "</w:body></w:document>"
    )
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", CONTENT_TYPES)
        archive.writestr("_rels/.rels", PACKAGE_RELS)
        archive.writestr("word/document.xml", document)
        archive.writestr("word/media/image1.png", MEDIA_BYTES)
        for name, data in (extra_parts or {}).items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def make_docx():
    """Factory: make_docx(["para", ["split", " runs"]], tables=[[...rows...]])."""

    def factory(paragraphs: List[Paragraph] = (), tables: Sequence[Sequence[Sequence[str]]] = ()) -> bytes:
        body = "".join(paragraph_xml(p) for p in paragraphs)
        body += "".join(table_xml(rows) for rows in tables)
        return build_docx(body)

    return factory


@pytest.fixture
def read_part():
    """Read one member of a zip archive as text."""

    def reader(buffer: bytes, name: str = "word/document.xml") -> str:
        with zipfile.ZipFile(BytesIO(buffer)) as archive:
            return archive.read(name).decode("utf-8")

    return reader


@pytest.fixture
def docx_paragraphs():
    """Paragraph texts of a DOCX, read back with python-docx."""
    from docx import Document

    def reader(buffer: bytes) -> List[str]:
        return [p.text for p in Document(BytesIO(buffer)).paragraphs]

    return reader


@pytest.fixture
def make_pdf():
    """Factory for a blank PDF with the given number of pages."""
    from reportlab.pdfgen import canvas

    def factory(pages: int = 3, size=(612, 800)) -> bytes:
        buffer = BytesIO()
        c = canvas.Canvas(buffer, pagesize=size)
        for number in range(pages):
            c.drawString(72, 72, f"Page {number + 1}")
            c.showPage()
        c.save()
        return buffer.getvalue()

    return factory


def _image_bytes(mode: str, fmt: str, size=(200, 100)) -> bytes:
    from PIL import Image

    color = (200, 0, 0, 128) if mode == "RGBA" else (200, 0, 0)
    buffer = BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def png_stamp() -> bytes:
    """Semi-transparent 200x100 PNG."""
    return _image_bytes("RGBA", "PNG")


@pytest.fixture
def jpeg_stamp() -> bytes:
    """200x100 JPEG."""
    return _image_bytes("RGB", "JPEG")


@pytest.fixture
def templates_home(tmp_path):
    """A templates directory plus a registry file pointing into it."""
    templates_dir = tmp_path / "templates"
    templates_dir.mkdir()
    config_path = tmp_path / "templates.config.json"
    return templates_dir, config_path


@pytest.fixture
def docx_from_body():
    """Factory: docx_from_body(body_xml, {"word/header1.xml": "..."})."""
    return build_docx
