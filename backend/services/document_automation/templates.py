"""
Template Manager
================
Registry of DOCX templates addressed by key.

The registry lives in a JSON file:

    {"templates": [
        {"key": "invoice", "file": "invoice.docx", "label": "Invoice", "category": "billing"}
    ]}

Template files are resolved relative to the templates directory.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.config import get_settings
from core.logger import get_logger

from .exceptions import TemplateError
from .generator import DocumentGenerator

log = get_logger(__name__)


@dataclass
class DocumentTemplate:
    """Document template definition."""
    key: str
    file: str
    label: str = ""
    category: str = "general"


class TemplateManager:
    """Loads the template registry and renders templates by key."""

    def __init__(
        self,
        templates_dir: Optional[Union[str, Path]] = None,
        config_path: Optional[Union[str, Path]] = None,
        generator: Optional[DocumentGenerator] = None,
    ):
        settings = get_settings()
        self.templates_dir = Path(templates_dir or settings.templates_dir)
        self.config_path = Path(config_path or settings.templates_config)
        self.generator = generator
        self._templates: Optional[Dict[str, DocumentTemplate]] = None

    @property
    def templates(self) -> Dict[str, DocumentTemplate]:
        if self._templates is None:
            self._templates = self._load_registry()
        return self._templates

    def _load_registry(self) -> Dict[str, DocumentTemplate]:
        if not self.config_path.exists():
            log.warning(f"Template registry not found: {self.config_path}")
            return {}

        try:
            raw = json.loads(self.config_path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise TemplateError(
                f"Template registry is not valid JSON: {self.config_path}",
                {"path": str(self.config_path)},
            ) from e

        templates: Dict[str, DocumentTemplate] = {}
        for entry in raw.get("templates", []) if isinstance(raw, dict) else []:
            if not isinstance(entry, dict) or not entry.get("key") or not entry.get("file"):
                log.warning(f"Skipping template registry entry without key/file: {entry}")
                continue
            template = DocumentTemplate(
                key=str(entry["key"]),
                file=str(entry["file"]),
                label=str(entry.get("label") or entry["key"]),
                category=str(entry.get("category") or "general"),
            )
            templates[template.key] = template

        log.debug(f"Loaded {len(templates)} templates from {self.config_path}")
        return templates

    def reload(self) -> None:
        self._templates = None

    def get_template(self, key: str) -> Optional[DocumentTemplate]:
        """Get a template by key."""
        return self.templates.get(key)

    def list_templates(self, category: Optional[str] = None) -> List[DocumentTemplate]:
        """List all templates, optionally filtered by category."""
        templates = list(self.templates.values())
        if category:
            templates = [t for t in templates if t.category == category]
        return templates

    def get_template_path(self, key: str) -> Path:
        """Get the file path for a template."""
        template = self.get_template(key)
        if not template:
            raise TemplateError(f"Unknown template: {key}", {"key": key})
        path = self.templates_dir / template.file
        if not path.exists():
            raise TemplateError(f"Template file not found: {template.file}", {"key": key, "path": str(path)})
        return path

    def render(self, key: str, data: Optional[Dict[str, Any]] = None) -> bytes:
        """Render the template registered under key."""
        path = self.get_template_path(key)
        generator = self.generator or DocumentGenerator()
        return generator.generate_docx_buffer(path, data)

    def create_sample_template(self, key: str) -> Path:
        """
        Create a sample DOCX template written in bracket syntax.
        Useful for initial setup.
        """
        from docx import Document
        from docx.enum.text import WD_ALIGN_PARAGRAPH

        template = self.get_template(key)
        if not template:
            raise TemplateError(f"Unknown template: {key}", {"key": key})

        doc = Document()

        title = doc.add_heading(template.label, level=1)
        title.alignment = WD_ALIGN_PARAGRAPH.CENTER

        p = doc.add_paragraph()
        p.add_run("Customer: ").bold = True
        p.add_run("[customer.name]")

        p = doc.add_paragraph()
        p.add_run("Issue date: ").bold = True
        p.add_run("[issueDate]")

        table = doc.add_table(rows=3, cols=2)
        table.cell(0, 0).text = "Item"
        table.cell(0, 1).text = "Price"
        table.cell(1, 0).text = "[#items]"
        table.cell(2, 0).text = "[name]"
        table.cell(2, 1).text = "[price]"
        row = table.add_row()
        row.cells[0].text = "[/items]"

        doc.add_paragraph("Notes: {c(this.notes, '-')}")

        self.templates_dir.mkdir(parents=True, exist_ok=True)
        filepath = self.templates_dir / template.file
        doc.save(str(filepath))
        log.info(f"Created sample template: {filepath}")
        return filepath
