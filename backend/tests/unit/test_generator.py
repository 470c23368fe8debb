"""
Document Generator Tests
========================
Renders small in-memory DOCX templates end to end and reads them back.
"""

import re
import subprocess
import sys
from pathlib import Path

import pytest
from lxml import etree

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from services.document_automation.exceptions import (
    ConversionError,
    TemplateError,
    TemplateEvaluationError,
    TemplateSyntaxError,
)
from services.document_automation.generator import (
    DocumentGenerator,
    generate_docx_buffer,
    render_template,
)
from services.document_automation.sandbox import GLOBAL_SCOPE, HELPER_NAME

W = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"


def table_rows(xml: str):
    root = etree.fromstring(xml.encode("utf-8"))
    return [
        ["".join(t.text or "" for t in cell.iter(f"{W}t")) for cell in row.iter(f"{W}tc")]
        for row in root.iter(f"{W}tr")
    ]


@pytest.fixture
def generator():
    return DocumentGenerator(no_sandbox=False, global_fallback=True)


class TestRender:
    """Rendering of values, loops and conditions."""

    def test_values(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["Dear [customer.name],", "Total: [total] EUR"])
        output = generator.render(template, {"customer": {"name": "Ada"}, "total": 12.5})
        assert docx_paragraphs(output) == ["Dear Ada,", "Total: 12.5 EUR"]

    def test_paragraph_loop(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["Items:", "[#items]", "{$idx + 1}. [name]: [price]", "[/items]", "End"])
        data = {"items": [{"name": "Desk", "price": 100}, {"name": "Lamp", "price": 9.99}]}
        assert docx_paragraphs(generator.render(template, data)) == [
            "Items:",
            "1. Desk: 100",
            "2. Lamp: 9.99",
            "End",
        ]

    def test_table_row_loop(self, generator, make_docx, read_part):
        template = make_docx(tables=[[
            ["Item", "Price"],
            ["[#items]", ""],
            ["[name]", "[price]"],
            ["[/items]", ""],
        ]])
        data = {"items": [{"name": "Desk", "price": 100}, {"name": "Lamp", "price": 20}]}
        rows = table_rows(read_part(generator.render(template, data)))
        assert rows == [["Item", "Price"], ["Desk", "100"], ["Lamp", "20"]]

    def test_nested_loops_with_same_alias(self, generator, make_docx, docx_paragraphs):
        template = make_docx([
            "[#items]",
            "[name]",
            "[#$item.items]",
            "- [name] of [$item.name]",
            "[/$item.items]",
            "[/items]",
        ])
        data = {"items": [{"name": "Box", "items": [{"name": "Pen"}, {"name": "Ink"}]}]}
        assert docx_paragraphs(generator.render(template, data)) == [
            "Box",
            "- Pen of Box",
            "- Ink of Box",
        ]

    def test_empty_and_missing_loops(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["A", "[#items]", "[name]", "[/items]", "B"])
        assert docx_paragraphs(generator.render(template, {"items": []})) == ["A", "B"]
        assert docx_paragraphs(generator.render(template, {"items": None})) == ["A", "B"]

    def test_if_block(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["{IF paid}", "PAID", "{END-IF}", "Thanks"])
        assert docx_paragraphs(generator.render(template, {"paid": True})) == ["PAID", "Thanks"]
        assert docx_paragraphs(generator.render(template, {"paid": False})) == ["Thanks"]

    def test_command_split_across_runs(self, generator, make_docx, docx_paragraphs):
        template = make_docx([["Hello {cust", "omer.na", "me}!"]])
        output = generator.render(template, {"customer": {"name": "Ada"}})
        assert docx_paragraphs(output) == ["Hello Ada!"]

    def test_values_are_escaped(self, generator, make_docx, read_part, docx_paragraphs):
        output = generator.render(make_docx(["[note]"]), {"note": "<b> & \"q\""})
        assert "&lt;b&gt; &amp;" in read_part(output)
        assert docx_paragraphs(output) == ['<b> & "q"']

    def test_newline_becomes_line_break(self, generator, make_docx, read_part):
        output = generator.render(make_docx(["[address]"]), {"address": "Line 1\nLine 2"})
        xml = read_part(output)
        assert "<w:br/>" in xml
        assert "Line 1" in xml and "Line 2" in xml

    def test_exec_and_ins_forms(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["{EXEC total = price * qty}{INS total} / {= c(total, '0')}"])
        assert docx_paragraphs(generator.render(template, {"price": 2, "qty": 3})) == ["6 / 6"]

    def test_keeps_non_text_members(self, generator, make_docx):
        import zipfile
        from io import BytesIO

        output = generator.render(make_docx(["[a]"]), {"a": 1})
        with zipfile.ZipFile(BytesIO(output)) as archive:
            assert archive.read("word/media/image1.png").startswith(b"\x89PNG")

    def test_template_without_commands(self, generator, make_docx, docx_paragraphs):
        assert docx_paragraphs(generator.render(make_docx(["Static"]), {})) == ["Static"]

    def test_non_utf8_part_copied(self, generator, docx_from_body, docx_paragraphs):
        import zipfile
        from io import BytesIO

        latin1 = '<?xml version="1.0" encoding="ISO-8859-1"?><root>café {x}</root>'.encode("latin-1")
        template = docx_from_body(
            "<w:p><w:r><w:t>[name]</w:t></w:r></w:p>", {"customXml/item1.xml": latin1}
        )
        output = generator.render(template, {"name": "Ada"})
        assert docx_paragraphs(output) == ["Ada"]
        with zipfile.ZipFile(BytesIO(output)) as archive:
            assert archive.read("customXml/item1.xml") == latin1


class TestHelperInTemplates:
    """The `c` helper stays usable across commands of one render."""

    def test_helper_after_exec_overwrite(self, generator, make_docx, read_part):
        template = make_docx([
            "{INS c(undefined,'fallback')}",
            "{EXEC c = null}",
            "{INS c(undefined,'fallback')}",
        ])
        xml = read_part(generator.render(template, {}))
        assert len(re.findall("fallback", xml)) == 2

    def test_helper_after_delete_inside_loop(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["[#rows]", "{EXEC delete c}{c($row.v, '-')}", "[/rows]"])
        output = generator.render(template, {"rows": [{"v": "x"}, {"v": None}]})
        assert docx_paragraphs(output) == ["x", "-"]

    def test_custom_helper_from_data(self, generator, make_docx, docx_paragraphs):
        output = generator.render(make_docx(["{c(1)}"]), {"c": lambda *args: "custom"})
        assert docx_paragraphs(output) == ["custom"]

    def test_exec_assignments_persist(self, generator, make_docx, docx_paragraphs):
        template = make_docx(["{EXEC label = 'No. ' + number}", "[label]"])
        assert docx_paragraphs(generator.render(template, {"number": 7})) == ["", "No. 7"]

    def test_payload_not_mutated(self, generator, make_docx):
        payload = {"a": 1}
        generator.render(make_docx(["{EXEC a = 2; b = 3}"]), payload)
        assert payload == {"a": 1}

    def test_global_helper_released(self, generator, make_docx):
        generator.render(make_docx(["[x]"]), {"x": 1})
        assert not GLOBAL_SCOPE.has(HELPER_NAME)

    def test_global_helper_only_in_no_sandbox_mode(self, make_docx):
        seen = []
        data = {"check": lambda: seen.append(GLOBAL_SCOPE.has(HELPER_NAME)) or ""}

        DocumentGenerator(no_sandbox=False, global_fallback=True).render(make_docx(["{check()}"]), data)
        DocumentGenerator(no_sandbox=True, global_fallback=True).render(make_docx(["{check()}"]), data)
        assert seen == [False, True]

    def test_no_sandbox_mode(self, make_docx, docx_paragraphs):
        generator = DocumentGenerator(no_sandbox=True, global_fallback=True)
        output = generator.render(make_docx(["{c(missing_ok ?? null, 'n/a')}"]), {"missing_ok": None})
        assert docx_paragraphs(output) == ["n/a"]


class TestRenderErrors:

    def test_empty_template(self, generator):
        with pytest.raises(TemplateError, match="empty"):
            generator.render(b"", {})

    def test_not_a_docx(self, generator):
        with pytest.raises(TemplateError):
            generator.render(b"plain bytes", {})

    def test_unknown_identifier(self, generator, make_docx):
        with pytest.raises(TemplateEvaluationError, match="customer is not defined") as info:
            generator.render(make_docx(["[customer.name]"]), {})
        assert info.value.details["part"] == "word/document.xml"

    def test_unterminated_loop(self, generator, make_docx):
        with pytest.raises(TemplateSyntaxError, match="Unterminated FOR item"):
            generator.render(make_docx(["[#items]", "[name]"]), {"items": []})

    def test_unmatched_close(self, generator, make_docx):
        with pytest.raises(TemplateSyntaxError, match="no matching FOR"):
            generator.render(make_docx(["[/items]"]), {})

    def test_loop_over_non_list(self, generator, make_docx):
        with pytest.raises(TemplateEvaluationError, match="not a list"):
            generator.render(make_docx(["[#items]", "[/items]"]), {"items": 5})

    def test_bad_expression(self, generator, make_docx):
        with pytest.raises(TemplateSyntaxError):
            generator.render(make_docx(["{a +}"]), {"a": 1})

    def test_global_helper_released_on_error(self, generator, make_docx):
        with pytest.raises(TemplateEvaluationError):
            generator.render(make_docx(["{boom}"]), {})
        assert not GLOBAL_SCOPE.has(HELPER_NAME)


class TestModuleFunctions:

    def test_render_template(self, make_docx, docx_paragraphs):
        assert docx_paragraphs(render_template(make_docx(["[x]"]), {"x": "y"})) == ["y"]

    def test_generate_docx_buffer(self, tmp_path, make_docx, docx_paragraphs):
        path = tmp_path / "invoice.docx"
        path.write_bytes(make_docx(["Invoice [number]"]))
        assert docx_paragraphs(generate_docx_buffer(path, {"number": "A-1"})) == ["Invoice A-1"]

    def test_generate_docx_buffer_missing_file(self, tmp_path):
        with pytest.raises(TemplateError, match="not found"):
            generate_docx_buffer(tmp_path / "nope.docx", {})


class TestConvertToPdf:

    def test_missing_converters(self):
        generator = DocumentGenerator(converters=["definitely-not-installed-office"])
        with pytest.raises(ConversionError, match="not installed"):
            generator.convert_to_pdf(b"docx")

    def test_timeout(self, monkeypatch):
        def fake_run(*args, **kwargs):
            raise subprocess.TimeoutExpired(cmd=args[0], timeout=1)

        monkeypatch.setattr(subprocess, "run", fake_run)
        generator = DocumentGenerator(converters=["soffice"], conversion_timeout=1)
        with pytest.raises(ConversionError, match="timed out"):
            generator.convert_to_pdf(b"docx")

    def test_first_available_converter_wins(self, monkeypatch):
        calls = []

        def fake_run(command, **kwargs):
            calls.append(command[0])
            if command[0] == "missing":
                raise FileNotFoundError(command[0])
            outdir = Path(command[command.index("--outdir") + 1])
            (outdir / "document.pdf").write_bytes(b"%PDF-1.4 fake")
            return subprocess.CompletedProcess(command, 0, b"", b"")

        monkeypatch.setattr(subprocess, "run", fake_run)
        generator = DocumentGenerator(converters=["missing", "soffice", "lowriter"])
        assert generator.convert_to_pdf(b"docx") == b"%PDF-1.4 fake"
        assert calls == ["missing", "soffice"]

    def test_failure_stops(self, monkeypatch):
        calls = []

        def fake_run(command, **kwargs):
            calls.append(command[0])
            return subprocess.CompletedProcess(command, 1, b"", b"boom")

        monkeypatch.setattr(subprocess, "run", fake_run)
        generator = DocumentGenerator(converters=["soffice", "lowriter"])
        with pytest.raises(ConversionError, match="exited with code 1"):
            generator.convert_to_pdf(b"docx")
        assert calls == ["soffice"]
