"""
Document Automation Service
===========================
Fills DOCX templates and stamps PDFs.

Supports:
- [bracket] template authoring rewritten to {command} syntax
- Sandboxed expression evaluation with a protected `c` helper
- DOCX to PDF preview conversion (LibreOffice)
- Coordinate-based PNG/JPEG stamping of PDF pages
"""

from .exceptions import (
    DocumentAutomationError,
    TemplateError,
    TemplateSyntaxError,
    TemplateEvaluationError,
    PlacementError,
    StampImageError,
    ConversionError,
    PreviewError,
)
from .bracket_compiler import rewrite_bracket_tokens, derive_loop_alias
from .normalizer import normalize_docx_delimiters
from .sandbox import SandboxRuntime, ensure_helper, global_helper
from .generator import DocumentGenerator, render_template, generate_docx_buffer, convert_docx_to_pdf
from .placement import PlacementDescriptor, parse_placements, resolve_placements
from .stamp_service import StampService, stamp_images
from .previews import PreviewStore
from .templates import TemplateManager

__all__ = [
    'DocumentAutomationError',
    'TemplateError',
    'TemplateSyntaxError',
    'TemplateEvaluationError',
    'PlacementError',
    'StampImageError',
    'ConversionError',
    'PreviewError',
    'rewrite_bracket_tokens',
    'derive_loop_alias',
    'normalize_docx_delimiters',
    'SandboxRuntime',
    'ensure_helper',
    'global_helper',
    'DocumentGenerator',
    'render_template',
    'generate_docx_buffer',
    'convert_docx_to_pdf',
    'PlacementDescriptor',
    'parse_placements',
    'resolve_placements',
    'StampService',
    'stamp_images',
    'PreviewStore',
    'TemplateManager',
]
