"""
Text & Number Utilities
=======================
Shared string/number coercion used by the template engine and the
stamp placement resolver.
"""

import json
import math
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

ASCII_IDENTIFIER = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')


# =============================================================================
# STRINGIFICATION
# =============================================================================

def _format_number(value: float) -> str:
    """Number to string the way JavaScript's String(n) does."""
    if not math.isfinite(value):
        return ""
    magnitude = abs(value)
    if magnitude >= 1e21 or 0 < magnitude < 1e-6:
        mantissa, exponent = repr(float(value)).split("e")
        return f"{mantissa}e{int(exponent):+d}"
    if isinstance(value, int) or float(value).is_integer():
        return str(int(value))
    return format(Decimal(repr(float(value))), "f")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_safe_string(value: Any) -> str:
    """
    Stringify any render value without ever raising.

    None -> "", numbers -> decimal text ("" when not finite), dates -> ISO-8601,
    lists -> concatenation of their stringified items, dicts -> compact JSON
    ("" when not serializable), everything else -> str().
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, Decimal):
        return str(value) if value.is_finite() else ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return "".join(to_safe_string(item) for item in value)
    if isinstance(value, dict):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=_json_default)
        except (TypeError, ValueError):
            return ""
    return str(value)


# =============================================================================
# IDENTIFIERS
# =============================================================================

def is_identifier_segment(value: str) -> bool:
    """True when value can be written as a bare (Unicode) identifier, `$` allowed."""
    if not value:
        return False
    head = value[0].replace("$", "_")
    tail = value[1:].replace("$", "_").replace("\u200c", "_").replace("\u200d", "_")
    return (head + tail).isidentifier()


def is_ascii_identifier(value: str) -> bool:
    return bool(ASCII_IDENTIFIER.match(value or ""))


def quote_string(value: str) -> str:
    """Quote a string as a double-quoted expression literal."""
    return json.dumps(value, ensure_ascii=False)


# =============================================================================
# NUMBERS
# =============================================================================

def to_number(value: Any) -> Optional[float]:
    """
    Coerce a loosely-typed input to a finite float.

    Accepts finite numbers and non-blank numeric strings; returns None for
    anything else (including booleans, NaN and infinities).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def first_number(values: Iterable[Any]) -> Optional[float]:
    """Return the first value that coerces to a finite number."""
    for value in values:
        number = to_number(value)
        if number is not None:
            return number
    return None


# =============================================================================
# FILENAMES
# =============================================================================

def sanitize_file_name(name: str, default: str = "document") -> str:
    """Replace characters that are not allowed in file names."""
    if not name:
        return default
    return UNSAFE_FILENAME_CHARS.sub("_", name).strip() or default


def ensure_extension(name: str, extension: str, default: str = "document") -> str:
    """Sanitize name and make sure it ends with the given extension."""
    suffix = extension if extension.startswith(".") else f".{extension}"
    sanitized = sanitize_file_name(name, default)
    if not sanitized.lower().endswith(suffix.lower()):
        return f"{sanitized}{suffix}"
    return sanitized


def ascii_fallback(name: str) -> str:
    """ASCII-only variant of a file name for legacy Content-Disposition headers."""
    replaced = re.sub(r"[^\x20-\x7E]", "_", name)
    replaced = re.sub(r"\s+", "_", replaced)
    return re.sub(r"_+", "_", replaced)


def build_output_filename(meta: Optional[Dict[str, Any]], extension: str = "docx") -> str:
    """Build `{projectNo}_{docTypeLabel}_{issueDate}.{ext}` from request metadata."""
    meta = meta or {}
    project_no = meta.get("projectNo") or "NO"
    doc_type = meta.get("docTypeLabel") or "DOC"
    issue_date = meta.get("issueDate") or "DATE"
    return ensure_extension(f"{project_no}_{doc_type}_{issue_date}", extension)
