"""
DOCX Delimiter Normalizer
=========================
Applies the bracket token compiler to every XML member of a DOCX archive.
The archive is only rebuilt when at least one member changed.
"""

import zipfile
from io import BytesIO
from typing import Dict, Optional

from core.logger import get_logger

from .bracket_compiler import DEFAULT_ALIAS_RULES, AliasRules, rewrite_bracket_tokens
from .exceptions import TemplateError

log = get_logger(__name__)


def open_archive(buffer: bytes) -> zipfile.ZipFile:
    """Open DOCX bytes as a zip archive, raising TemplateError when it is not one."""
    try:
        return zipfile.ZipFile(BytesIO(buffer))
    except zipfile.BadZipFile as e:
        raise TemplateError(f"Template is not a valid DOCX archive: {e}") from e


def is_text_part(name: str) -> bool:
    return name.lower().endswith(".xml")


def decode_part(data: bytes) -> Optional[str]:
    """UTF-8 text of an XML member, or None for parts in another encoding."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def rebuild_archive(source: zipfile.ZipFile, replacements: Dict[str, bytes]) -> bytes:
    """Copy every member of source, substituting the given member payloads."""
    output = BytesIO()
    with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as target:
        for info in source.infolist():
            data = replacements.get(info.filename)
            if data is None:
                data = source.read(info)
            target.writestr(info, data)
    return output.getvalue()


def normalize_docx_delimiters(buffer: bytes, rules: AliasRules = DEFAULT_ALIAS_RULES) -> bytes:
    """
    Rewrite bracket tokens in all XML parts of a DOCX.

    Returns the original buffer untouched when no part needed rewriting.
    """
    replacements: Dict[str, bytes] = {}

    with open_archive(buffer) as archive:
        for info in archive.infolist():
            if info.is_dir() or not is_text_part(info.filename):
                continue

            original = decode_part(archive.read(info))
            if original is None:
                log.debug(f"Skipping non UTF-8 part {info.filename}")
                continue
            result = rewrite_bracket_tokens(original, rules)
            if result.mutated:
                replacements[info.filename] = result.content.encode("utf-8")

        if not replacements:
            return buffer

        log.debug(f"Normalized bracket tokens in {sorted(replacements)}")
        return rebuild_archive(archive, replacements)
