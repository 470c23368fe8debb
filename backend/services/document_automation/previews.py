"""
Preview Store
=============
Keeps rendered preview PDFs on disk so a client can stamp them later by id.
"""

import re
import uuid
from pathlib import Path
from typing import Optional, Union

from core.config import get_settings
from core.logger import get_logger

from .exceptions import PreviewError

log = get_logger(__name__)

PREVIEW_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class PreviewStore:
    """Directory of `<id>.pdf` files."""

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory or get_settings().preview_dir)

    def _path_for(self, preview_id: str) -> Path:
        if not preview_id or not PREVIEW_ID_PATTERN.match(preview_id):
            raise PreviewError("Invalid preview id", {"preview_id": preview_id})
        return self.directory / f"{preview_id}.pdf"

    def save(self, pdf_bytes: bytes) -> str:
        """Store a PDF and return its new id."""
        self.directory.mkdir(parents=True, exist_ok=True)
        preview_id = uuid.uuid4().hex
        self._path_for(preview_id).write_bytes(pdf_bytes)
        log.debug(f"Saved preview {preview_id} ({len(pdf_bytes)} bytes)")
        return preview_id

    def load(self, preview_id: str) -> bytes:
        path = self._path_for(preview_id)
        if not path.exists():
            raise PreviewError("Preview not found", {"preview_id": preview_id})
        return path.read_bytes()

    def exists(self, preview_id: str) -> bool:
        try:
            return self._path_for(preview_id).exists()
        except PreviewError:
            return False

    def delete(self, preview_id: str) -> bool:
        path = self._path_for(preview_id)
        if not path.exists():
            return False
        path.unlink()
        return True
