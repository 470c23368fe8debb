"""
Docgen Configuration
====================
Runtime settings loaded from the environment (and an optional .env file).
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    """Settings for the document automation backend."""
    templates_dir: Path = field(default_factory=lambda: Path(os.getenv("DOCGEN_TEMPLATES_DIR", "templates")))
    templates_config: Path = field(default_factory=lambda: Path(os.getenv("DOCGEN_TEMPLATES_CONFIG", "templates.config.json")))
    preview_dir: Path = field(default_factory=lambda: Path(os.getenv("DOCGEN_PREVIEW_DIR", "previews")))
    log_level: str = field(default_factory=lambda: os.getenv("DOCGEN_LOG_LEVEL", "INFO").upper())
    log_to_file: bool = field(default_factory=lambda: _env_flag("DOCGEN_LOG_TO_FILE"))
    log_dir: Path = field(default_factory=lambda: Path(os.getenv("DOCGEN_LOG_DIR", "logs")))
    no_sandbox: bool = field(default_factory=lambda: _env_flag("DOCGEN_NO_SANDBOX"))
    global_helper: bool = field(default_factory=lambda: _env_flag("DOCGEN_GLOBAL_HELPER", "true"))
    pdf_converters: List[str] = field(default_factory=lambda: _env_list("DOCGEN_PDF_CONVERTERS", "libreoffice,soffice,lowriter"))
    pdf_timeout: float = field(default_factory=lambda: float(os.getenv("DOCGEN_PDF_TIMEOUT", "60")))


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, building them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read the environment. Used by tests that patch variables."""
    global _settings
    _settings = Settings()
    return _settings
