"""
Document Generator
==================
Main document generation engine.

Workflow:
1. Load DOCX template bytes
2. Rewrite [bracket] tokens into {command} syntax
3. Prepare a data context that always exposes the `c` helper
4. Run the report engine through the sandbox runtime
5. Optionally convert the result to PDF (LibreOffice)
"""

import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.config import get_settings
from core.logger import get_logger

from .exceptions import ConversionError, TemplateError
from .normalizer import normalize_docx_delimiters
from .report_engine import ReportEngine
from .sandbox import SandboxContext, SandboxRuntime, global_helper, reinstate_helper

log = get_logger(__name__)


class DocumentGenerator:
    """
    Generates DOCX documents from bracket-token templates.

    Supports:
    - [field], [a.b], [#loop]...[/loop] authoring syntax
    - {INS}/{EXEC}/{FOR}/{IF} commands written directly in the template
    - Protected `c(value, fallback, ...rest)` helper in every expression
    - PDF conversion via LibreOffice
    """

    def __init__(
        self,
        no_sandbox: Optional[bool] = None,
        global_fallback: Optional[bool] = None,
        converters: Optional[List[str]] = None,
        conversion_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.no_sandbox = settings.no_sandbox if no_sandbox is None else no_sandbox
        self.global_fallback = settings.global_helper if global_fallback is None else global_fallback
        self.converters = converters or settings.pdf_converters
        self.conversion_timeout = conversion_timeout or settings.pdf_timeout
        self.engine = ReportEngine(SandboxRuntime(no_sandbox=self.no_sandbox))

    def prepare_data(self, payload: Optional[Dict[str, Any]]) -> SandboxContext:
        """Shallow-copy the payload into a context with the helper installed."""
        return reinstate_helper(SandboxContext(dict(payload or {})))

    def render(self, template_bytes: bytes, data: Optional[Dict[str, Any]] = None) -> bytes:
        """
        Render a DOCX template with data.

        Args:
            template_bytes: DOCX template as bytes
            data: Values referenced by the template

        Returns:
            Rendered DOCX as bytes

        Raises:
            TemplateError: template is not a DOCX or has malformed commands
            TemplateEvaluationError: an expression failed to evaluate
        """
        if not template_bytes:
            raise TemplateError("Template is empty")

        normalized = normalize_docx_delimiters(template_bytes)
        context = self.prepare_data(data)

        # Only the non-sandboxed runtime reads GLOBAL_SCOPE.
        with global_helper(self.global_fallback and self.no_sandbox):
            output = self.engine.render(normalized, context)

        log.info(f"Rendered DOCX ({len(template_bytes)} -> {len(output)} bytes)")
        return output

    def generate_docx_buffer(
        self,
        template_path: Union[str, Path],
        payload: Optional[Dict[str, Any]] = None,
    ) -> bytes:
        """Read a template file and render it."""
        path = Path(template_path)
        if not path.exists():
            raise TemplateError(f"Template file not found: {path}", {"path": str(path)})
        return self.render(path.read_bytes(), payload)

    def convert_to_pdf(self, docx_bytes: bytes) -> bytes:
        """
        Convert DOCX bytes to PDF with the first available LibreOffice binary.

        A missing binary moves on to the next candidate; any other failure
        stops and raises ConversionError.
        """
        with tempfile.TemporaryDirectory(prefix="docx-preview-") as tmp:
            tmp_dir = Path(tmp)
            docx_path = tmp_dir / "document.docx"
            pdf_path = tmp_dir / "document.pdf"
            docx_path.write_bytes(docx_bytes)

            last_error: Optional[str] = None
            for command in self.converters:
                try:
                    result = subprocess.run(
                        [
                            command,
                            "--headless",
                            "--convert-to", "pdf",
                            "--outdir", str(tmp_dir),
                            str(docx_path),
                        ],
                        capture_output=True,
                        timeout=self.conversion_timeout,
                    )
                except FileNotFoundError:
                    log.debug(f"PDF converter not installed: {command}")
                    last_error = f"{command} not installed"
                    continue
                except subprocess.TimeoutExpired as e:
                    raise ConversionError(f"PDF conversion timed out ({command})") from e

                if result.returncode == 0 and pdf_path.exists():
                    log.info(f"Converted DOCX to PDF with {command}")
                    return pdf_path.read_bytes()

                last_error = f"{command} exited with code {result.returncode}"
                log.error(f"PDF conversion failed: {result.stderr.decode(errors='replace')}")
                break

        raise ConversionError(f"Could not convert DOCX to PDF: {last_error or 'no converter configured'}")


_default_generator: Optional[DocumentGenerator] = None


def get_generator() -> DocumentGenerator:
    global _default_generator
    if _default_generator is None:
        _default_generator = DocumentGenerator()
    return _default_generator


def render_template(template_bytes: bytes, data: Optional[Dict[str, Any]] = None) -> bytes:
    """Render DOCX template bytes with data using the default generator."""
    return get_generator().render(template_bytes, data)


def generate_docx_buffer(
    template_path: Union[str, Path],
    payload: Optional[Dict[str, Any]] = None,
) -> bytes:
    """Render the DOCX template at template_path with payload."""
    return get_generator().generate_docx_buffer(template_path, payload)


def convert_docx_to_pdf(docx_bytes: bytes) -> bytes:
    """Convert DOCX bytes to PDF using the configured converters."""
    return get_generator().convert_to_pdf(docx_bytes)
