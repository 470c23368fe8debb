"""
Report Engine
=============
Executes `{...}` commands inside the XML parts of a DOCX.

Commands:
    {expr} / {INS expr} / {= expr}   insert a value
    {EXEC code}                      run statements, insert nothing
    {FOR a IN expr} ... {END-FOR a}  repeat content, binding $a and $idx
    {IF expr} ... {END-IF}           keep content when expr is truthy

Processing of one part:
1. Word splits text into runs freely, so command text spread over several
   <w:t> nodes is first pulled together into the node where it starts.
2. A FOR/END-FOR/IF/END-IF command that is the only text of a table row or
   paragraph replaces that whole row/paragraph, so loops repeat rows and
   paragraphs instead of leaving empty ones behind.
3. The serialized part is split into markup and commands, commands are
   nested into blocks and the blocks are rendered against the data.
4. The output is parsed again; malformed XML is a template error.
"""

import html
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from xml.sax.saxutils import escape

from lxml import etree

from core.logger import get_logger

from .exceptions import (
    DocumentAutomationError,
    TemplateError,
    TemplateEvaluationError,
    TemplateSyntaxError,
)
from .expressions import is_truthy
from .normalizer import decode_part, is_text_part, open_archive, rebuild_archive
from .sandbox import SandboxContext, SandboxRuntime
from .text_utils import to_safe_string

log = get_logger(__name__)

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
W_T = f"{{{W_NS}}}t"
W_P = f"{{{W_NS}}}p"
W_TR = f"{{{W_NS}}}tr"
W_TC = f"{{{W_NS}}}tc"
W_SECT_PR = f"{{{W_NS}}}sectPr"
XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

COMMAND_PATTERN = re.compile(r"\{([^{}]*)\}")
MARKUP_PATTERN = re.compile(r"(<[^>]*>)")
TEXT_RUN_OPEN = re.compile(r"^<w:t(?:\s[^>]*)?>$")
STRUCTURAL_COMMAND = re.compile(r"^\s*\{\s*(?:FOR|END-FOR|IF|END-IF)\b[^{}]*\}\s*$", re.IGNORECASE)
INVALID_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

FOR_PATTERN = re.compile(r"^FOR\s+(\$?[^\s]+)\s+IN\s+(.+)$", re.IGNORECASE | re.DOTALL)
END_FOR_PATTERN = re.compile(r"^END-FOR(?:\s+(\$?[^\s]+))?\s*$", re.IGNORECASE)
IF_PATTERN = re.compile(r"^IF\s+(.+)$", re.IGNORECASE | re.DOTALL)
END_IF_PATTERN = re.compile(r"^END-IF\b.*$", re.IGNORECASE | re.DOTALL)
EXEC_PATTERN = re.compile(r"^EXEC\s+(.+)$", re.IGNORECASE | re.DOTALL)
INS_PATTERN = re.compile(r"^(?:INS\s+|=\s*)(.+)$", re.IGNORECASE | re.DOTALL)

LINE_BREAK = '</w:t><w:br/><w:t xml:space="preserve">'


# =============================================================================
# PRE-PROCESSING (lxml)
# =============================================================================

def _has_open_command(text: str) -> bool:
    return text.rfind("{") > text.rfind("}")


def _owning_paragraph(node: etree._Element) -> Optional[etree._Element]:
    return next(node.iterancestors(W_P), None)


def merge_split_commands(root: etree._Element) -> None:
    """
    Move command text that spans several <w:t> nodes of one paragraph into
    the node where the command starts.
    """
    for paragraph in root.iter(W_P):
        pending: Optional[etree._Element] = None

        for node in paragraph.iter(W_T):
            if _owning_paragraph(node) is not paragraph:
                continue
            text = node.text or ""
            if pending is not None:
                close = text.find("}")
                if close < 0:
                    pending.text = (pending.text or "") + text
                    node.text = ""
                    continue
                pending.text = (pending.text or "") + text[: close + 1]
                node.text = text[close + 1:]
                pending = None
                text = node.text

            if "{" in text:
                node.set(XML_SPACE, "preserve")
            if _has_open_command(text):
                pending = node


def _element_text(element: etree._Element) -> str:
    return "".join(node.text or "" for node in element.iter(W_T))


def _replace_with_text(element: etree._Element, text: str) -> None:
    parent = element.getparent()
    previous = element.getprevious()
    tail = element.tail or ""
    if previous is not None:
        previous.tail = (previous.tail or "") + text + tail
    else:
        parent.text = (parent.text or "") + text + tail
    parent.remove(element)


def _is_only_paragraph_in_cell(paragraph: etree._Element) -> bool:
    parent = paragraph.getparent()
    return parent is not None and parent.tag == W_TC and len(parent.findall(W_P)) == 1


def collapse_structural_commands(root: etree._Element) -> None:
    """Replace rows/paragraphs holding nothing but a block command by that command."""
    for row in list(root.iter(W_TR)):
        text = _element_text(row)
        if STRUCTURAL_COMMAND.match(text):
            _replace_with_text(row, text.strip())

    for paragraph in list(root.iter(W_P)):
        if paragraph.getparent() is None or _is_only_paragraph_in_cell(paragraph):
            continue
        if paragraph.find(f".//{W_SECT_PR}") is not None:
            continue
        text = _element_text(paragraph)
        if STRUCTURAL_COMMAND.match(text):
            _replace_with_text(paragraph, text.strip())


def prepare_part(data: bytes) -> str:
    try:
        root = etree.fromstring(data)
    except etree.XMLSyntaxError as e:
        raise TemplateError(f"Template part is not well-formed XML: {e}") from e
    merge_split_commands(root)
    collapse_structural_commands(root)
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True).decode("utf-8")


# =============================================================================
# COMMAND TREE
# =============================================================================

@dataclass
class Markup:
    text: str


@dataclass
class Insert:
    code: str
    in_text_run: bool = True


@dataclass
class Exec:
    code: str


@dataclass
class Block:
    children: List["Node"] = field(default_factory=list)


@dataclass
class ForBlock(Block):
    alias: str = ""
    code: str = ""


@dataclass
class IfBlock(Block):
    code: str = ""


Node = Union[Markup, Insert, Exec, Block]


def _strip_alias(name: str) -> str:
    return name[1:] if name.startswith("$") else name


def parse_commands(xml: str) -> Block:
    """Split serialized XML into markup and commands and nest the blocks."""
    root = Block()
    stack: List[Block] = [root]
    in_text_run = False

    for chunk in MARKUP_PATTERN.split(xml):
        if not chunk:
            continue
        if chunk.startswith("<"):
            stack[-1].children.append(Markup(chunk))
            in_text_run = bool(TEXT_RUN_OPEN.match(chunk))
            continue

        position = 0
        for match in COMMAND_PATTERN.finditer(chunk):
            raw = html.unescape(match.group(1)).strip()
            if not raw:
                continue
            if match.start() > position:
                stack[-1].children.append(Markup(chunk[position:match.start()]))
            position = match.end()
            _add_command(stack, raw, in_text_run)
        if position < len(chunk):
            stack[-1].children.append(Markup(chunk[position:]))

    if len(stack) > 1:
        open_block = stack[-1]
        label = f"FOR {open_block.alias}" if isinstance(open_block, ForBlock) else "IF"
        raise TemplateSyntaxError(f"Unterminated {label} command", {"command": label})
    return root


def _add_command(stack: List[Block], raw: str, in_text_run: bool) -> None:
    current = stack[-1]

    match = FOR_PATTERN.match(raw)
    if match:
        block = ForBlock(alias=_strip_alias(match.group(1)), code=match.group(2).strip())
        current.children.append(block)
        stack.append(block)
        return

    match = END_FOR_PATTERN.match(raw)
    if match:
        alias = _strip_alias(match.group(1) or "")
        if not isinstance(current, ForBlock) or (alias and alias != current.alias):
            raise TemplateSyntaxError(f"Unexpected {raw}: no matching FOR", {"command": raw})
        stack.pop()
        return

    match = IF_PATTERN.match(raw)
    if match:
        block = IfBlock(code=match.group(1).strip())
        current.children.append(block)
        stack.append(block)
        return

    if END_IF_PATTERN.match(raw):
        if not isinstance(current, IfBlock):
            raise TemplateSyntaxError(f"Unexpected {raw}: no matching IF", {"command": raw})
        stack.pop()
        return

    match = EXEC_PATTERN.match(raw)
    if match:
        current.children.append(Exec(match.group(1).strip()))
        return

    match = INS_PATTERN.match(raw)
    current.children.append(Insert(match.group(1).strip() if match else raw, in_text_run))


# =============================================================================
# RENDERING
# =============================================================================

def format_value(value: Any, in_text_run: bool) -> str:
    text = INVALID_XML_CHARS.sub("", escape(to_safe_string(value)))
    if in_text_run and "\n" in text:
        text = text.replace("\r\n", "\n").replace("\n", LINE_BREAK)
    return text


class ReportEngine:
    """Renders command trees against a data context through the sandbox runtime."""

    def __init__(self, runtime: SandboxRuntime):
        self.runtime = runtime

    def run(self, code: str, root: SandboxContext, loop_vars: Dict[str, Any]) -> Any:
        sandbox = SandboxContext({**root.values, **loop_vars})
        sandbox.bindings = root.bindings
        try:
            outcome = self.runtime.run(code, sandbox)
        except DocumentAutomationError:
            raise
        except RecursionError as e:
            raise TemplateEvaluationError(f"Expression too deeply nested: {code}") from e
        except Exception as e:
            raise TemplateEvaluationError(f"Error evaluating '{code}': {e}", {"code": code}) from e

        root.values = {
            name: value for name, value in outcome.context.values.items() if name not in loop_vars
        }
        return outcome.result

    def render_block(
        self,
        block: Block,
        root: SandboxContext,
        loop_vars: Dict[str, Any],
        output: List[str],
    ) -> None:
        for node in block.children:
            if isinstance(node, Markup):
                output.append(node.text)
            elif isinstance(node, Insert):
                output.append(format_value(self.run(node.code, root, loop_vars), node.in_text_run))
            elif isinstance(node, Exec):
                self.run(node.code, root, loop_vars)
            elif isinstance(node, ForBlock):
                items = self.run(node.code, root, loop_vars)
                if items is None:
                    continue
                if not isinstance(items, (list, tuple)):
                    raise TemplateEvaluationError(
                        f"FOR {node.alias} IN {node.code}: value is not a list",
                        {"command": f"FOR {node.alias} IN {node.code}"},
                    )
                for index, item in enumerate(items):
                    scope = {**loop_vars, f"${node.alias}": item, "$idx": index}
                    self.render_block(node, root, scope, output)
            elif isinstance(node, IfBlock):
                if is_truthy(self.run(node.code, root, loop_vars)):
                    self.render_block(node, root, loop_vars, output)
            else:
                self.render_block(node, root, loop_vars, output)

    def render_part(self, name: str, data: bytes, root: SandboxContext) -> Optional[bytes]:
        """Render one XML part. Returns None when the part holds no commands."""
        text = decode_part(data)
        if text is None or not COMMAND_PATTERN.search(text):
            return None

        tree = parse_commands(prepare_part(data))
        if all(isinstance(node, Markup) for node in tree.children):
            return None
        output: List[str] = []
        self.render_block(tree, root, {}, output)
        rendered = "".join(output).encode("utf-8")

        try:
            etree.fromstring(rendered)
        except etree.XMLSyntaxError as e:
            raise TemplateSyntaxError(
                f"Rendered part {name} is not well-formed XML: {e}", {"part": name}
            ) from e
        return rendered

    def render(self, buffer: bytes, root: SandboxContext) -> bytes:
        """Render every XML part of a DOCX archive."""
        replacements: Dict[str, bytes] = {}
        with open_archive(buffer) as archive:
            for info in archive.infolist():
                if info.is_dir() or not is_text_part(info.filename):
                    continue
                try:
                    rendered = self.render_part(info.filename, archive.read(info), root)
                except DocumentAutomationError as e:
                    e.details.setdefault("part", info.filename)
                    raise
                if rendered is not None:
                    replacements[info.filename] = rendered
            return rebuild_archive(archive, replacements)

