"""
Docgen Services
Template filling and PDF stamping
"""

from .document_automation import (
    DocumentGenerator,
    StampService,
    TemplateManager,
    PreviewStore,
)

__all__ = [
    'DocumentGenerator',
    'StampService',
    'TemplateManager',
    'PreviewStore',
]
