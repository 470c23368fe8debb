"""
Bracket Token Compiler
======================
Rewrites the authoring syntax used in Word templates into engine commands.

    [field]          -> {field}
    [a.b c]          -> {a["b c"]}
    [#items]         -> {FOR item IN items}
    [name]           -> {$item.name}          (inside the loop)
    [/items]         -> {END-FOR item}

Loop aliases are singularized from the loop field name and deduplicated
against the aliases of the loops that are still open.
"""

import re
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Set, Tuple

from .text_utils import is_ascii_identifier, is_identifier_segment, quote_string

# A `{...}` command inside one text node is copied verbatim so already-compiled
# text is stable. A stray `{` never spans markup.
TOKEN_PATTERN = re.compile(r"(\{[^{}<]*\})|\[(#?/?)([^\]\r\n<]*?)\]")


@dataclass(frozen=True)
class AliasRules:
    """
    Heuristic singularization used to name loop aliases.

    Suffix rules are tried in order; the first matching suffix (on a word
    longer than the suffix) is replaced. This is English-only guesswork:
    irregular plurals ("children", "data") are left as they are.
    """
    suffix_rules: Tuple[Tuple[str, str], ...] = (
        ("ies", "y"),
        ("ses", "s"),
        ("s", ""),
    )
    fallback: str = "item"

    def singularize(self, word: str) -> str:
        for suffix, replacement in self.suffix_rules:
            if word.endswith(suffix) and len(word) > len(suffix):
                return word[: -len(suffix)] + replacement
        return word


DEFAULT_ALIAS_RULES = AliasRules()


@dataclass
class LoopFrame:
    name: str
    alias: str


class RewriteResult(NamedTuple):
    content: str
    mutated: bool


def derive_loop_alias(
    loop_name: str,
    active_aliases: Set[str],
    rules: AliasRules = DEFAULT_ALIAS_RULES,
) -> str:
    """Derive a unique alias for a loop and register it as active."""
    base = loop_name
    if "." in loop_name:
        base = loop_name.split(".")[-1] or loop_name
    base = rules.singularize(base)
    base = re.sub(r"[^A-Za-z0-9_]", "", base)
    if not base or not re.match(r"[A-Za-z_]", base):
        base = rules.fallback

    alias = base
    suffix = 1
    while alias in active_aliases:
        suffix += 1
        alias = f"{base}{suffix}"
    active_aliases.add(alias)
    return alias


def needs_loop_context(body: str) -> bool:
    """A bare field name (no path, no computation) is resolved against the loop item."""
    return bool(body) and "." not in body and "-" not in body


def access_from_alias(alias: str, body: str) -> str:
    member = f".{body}" if is_ascii_identifier(body) else f"[{quote_string(body)}]"
    return f"${alias}{member}"


def to_root_expression(body: str) -> str:
    """Rewrite a dotted path so that every segment is valid expression syntax."""
    if not body:
        return body

    fallback = f"this[{quote_string(body)}]"

    if "." not in body:
        return body if is_identifier_segment(body) else fallback

    head, *rest = body.split(".")
    if not head or not is_identifier_segment(head):
        return fallback

    expression = head
    for segment in rest:
        trimmed = segment.strip()
        if not trimmed:
            return fallback
        if is_identifier_segment(trimmed):
            expression += f".{trimmed}"
        else:
            expression += f"[{quote_string(trimmed)}]"
    return expression


def rewrite_bracket_tokens(
    content: str,
    rules: AliasRules = DEFAULT_ALIAS_RULES,
) -> RewriteResult:
    """
    Rewrite every bracket token in content in a single left-to-right pass.

    Text outside the matched tokens is never touched. Returns the input
    unchanged with mutated=False when nothing was rewritten.
    """
    active_aliases: Set[str] = set()
    loop_stack: List[LoopFrame] = []
    parts: List[str] = []
    last_index = 0
    mutated = False

    for match in TOKEN_PATTERN.finditer(content):
        if match.group(1) is not None:
            continue

        prefix, raw_body = match.group(2), match.group(3)
        body = raw_body.strip()
        if not body:
            continue

        parts.append(content[last_index:match.start()])

        if prefix == "#":
            alias = derive_loop_alias(body, active_aliases, rules)
            loop_stack.append(LoopFrame(name=body, alias=alias))
            parts.append(f"{{FOR {alias} IN {body}}}")
        elif prefix == "/":
            frame: Optional[LoopFrame] = loop_stack.pop() if loop_stack else None
            if frame is not None:
                active_aliases.discard(frame.alias)
                parts.append(f"{{END-FOR {frame.alias}}}")
            else:
                parts.append(f"{{END-FOR {body}}}")
        elif loop_stack and needs_loop_context(body):
            parts.append(f"{{{access_from_alias(loop_stack[-1].alias, body)}}}")
        else:
            parts.append(f"{{{to_root_expression(body)}}}")

        mutated = True
        last_index = match.end()

    if not mutated:
        return RewriteResult(content, False)

    parts.append(content[last_index:])
    return RewriteResult("".join(parts), True)
