"""
Document Automation Errors
==========================
Exception hierarchy for template rendering and PDF stamping.
"""

from typing import Any, Dict, Optional


class DocumentAutomationError(Exception):
    """
    Base exception for all document automation errors.

    Attributes:
        error_code: Stable error code (e.g., DOC-100)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "DOC-000"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for callers that serialize errors."""
        return {
            "ok": False,
            "error_code": self.error_code,
            "error": self.message,
            "details": self.details,
        }


# Template errors (DOC-1XX)
class TemplateError(DocumentAutomationError):
    """Template archive unreadable, unknown template key or missing file."""
    error_code = "DOC-100"


class TemplateSyntaxError(TemplateError):
    """Malformed command inside a template."""
    error_code = "DOC-101"


class TemplateEvaluationError(DocumentAutomationError):
    """An expression failed while being evaluated against the render data."""
    error_code = "DOC-102"


# Stamping errors (DOC-2XX)
class PlacementError(DocumentAutomationError):
    """A placement descriptor could not be resolved."""
    error_code = "DOC-200"


class StampImageError(DocumentAutomationError):
    """Missing PDF/stamp bytes or unsupported stamp image format."""
    error_code = "DOC-201"


# Conversion and storage errors (DOC-3XX)
class ConversionError(DocumentAutomationError):
    """DOCX to PDF conversion failed."""
    error_code = "DOC-300"


class PreviewError(DocumentAutomationError):
    """Invalid or unknown preview identifier."""
    error_code = "DOC-301"
