"""Tests for artifact export (single files and the zip bundle)."""

import io
import json
import zipfile

import pytest

from compilerhub.exceptions import InvalidOptionError
from compilerhub.export import ast_of, cfg_of, export_artifact, export_bundle, tokens_of
from compilerhub.models import ArtifactKind, CompileResult, JobMode, StageArtifact, StageRecord, StageStatus, utcnow
from tests.fakes import brainfuck_result

SOURCE = "+[-]."


@pytest.fixture(scope="module")
def result() -> CompileResult:
    return brainfuck_result(SOURCE)


def _text(result: CompileResult, artifact: str, fmt: str) -> str:
    return export_artifact(result, artifact, fmt)[2].decode("utf-8")


def _with_bytecode(result: CompileResult) -> CompileResult:
    """result plus a javap-style codegen record after its ir stage."""
    payload = {
        "format": "jvm",
        "methods": [
            {
                "name": "Main.main",
                "instructions": [
                    {"offset": 0, "op": "iconst_1", "args": "", "line": 3},
                    {"offset": 1, "op": "ireturn", "args": "", "line": 3},
                ],
            }
        ],
    }
    now = utcnow()
    record = StageRecord(
        stage_name="codegen",
        status=StageStatus.COMPLETED,
        started_at=now,
        finished_at=now,
        artifact=StageArtifact(kind=ArtifactKind.BYTECODE, payload=payload),
    )
    return result.model_copy(update={"records": (*result.records[:3], record)})


# ============================================================================
# Extraction
# ============================================================================


class TestExtraction:
    def test_tokens(self, result: CompileResult) -> None:
        tokens = tokens_of(result)
        assert [t["type"] for t in tokens] == ["INCREMENT", "LOOP_START", "DECREMENT", "LOOP_END", "OUTPUT"]

    def test_ast(self, result: CompileResult) -> None:
        assert ast_of(result)["type"] == "Program"

    def test_cfg_uses_instruction_units(self, result: CompileResult) -> None:
        cfg = cfg_of(result)
        assert cfg["stage"] == "ir"
        assert [n["label"] for n in cfg["nodes"]] == ["ADD 1", "JZ 3", "ADD -1", "JNZ 1", "OUTPUT"]
        kinds = [e["kind"] for e in cfg["edges"]]
        assert kinds.count("next") == 4
        assert kinds.count("jump") == 2

    def test_cfg_without_code(self, result: CompileResult) -> None:
        analyzed = result.model_copy(update={"records": result.records[:2], "mode": JobMode.ANALYZE})
        assert cfg_of(analyzed) == {"stage": None, "nodes": [], "edges": []}


# ============================================================================
# Single artifacts
# ============================================================================


class TestExportArtifact:
    def test_tokens_json(self, result: CompileResult) -> None:
        filename, media_type, content = export_artifact(result, "tokens", "json")
        assert (filename, media_type) == ("tokens.json", "application/json")
        assert len(json.loads(content)) == 5

    def test_tokens_txt(self, result: CompileResult) -> None:
        first = _text(result, "tokens", "txt").splitlines()[0]
        assert first.startswith("INCREMENT")
        assert first.endswith("Line 1")

    def test_ast_txt_is_indented(self, result: CompileResult) -> None:
        lines = _text(result, "ast", "txt").splitlines()
        assert lines[0].startswith("Program")
        assert lines[1].startswith("  ")
        # Loop body is one level deeper than the loop
        loop = next(i for i, ln in enumerate(lines) if ln.strip().startswith("Loop"))
        assert lines[loop + 1].startswith("    ")

    def test_ast_dot(self, result: CompileResult) -> None:
        filename, media_type, content = export_artifact(result, "ast", "dot")
        text = content.decode()
        assert filename == "ast.dot"
        assert media_type == "text/vnd.graphviz"
        assert text.startswith("digraph AST {")
        assert text.count("->") == len(result.records[1].artifact.relations)  # type: ignore[union-attr]

    def test_ir_json(self, result: CompileResult) -> None:
        payload = json.loads(_text(result, "ir", "json"))
        assert payload["format"] == "brainfuck-ir"
        assert payload["optimized"] is False

    def test_ir_txt(self, result: CompileResult) -> None:
        assert _text(result, "ir", "txt").splitlines() == [
            "    0: ADD 1",
            "    1: JZ 3",
            "    2: ADD -1",
            "    3: JNZ 1",
            "    4: OUTPUT",
        ]

    def test_asm_txt_lists_bytecode(self, result: CompileResult) -> None:
        filename, media_type, content = export_artifact(_with_bytecode(result), "asm", "txt")
        assert (filename, media_type) == ("asm.txt", "text/plain")
        assert content.decode().splitlines() == ["Main.main:", "    0: iconst_1", "    1: ireturn"]

    def test_asm_json_skips_ir(self, result: CompileResult) -> None:
        payload = json.loads(_text(_with_bytecode(result), "asm", "json"))
        assert payload["format"] == "jvm"
        assert [ins["op"] for ins in payload["methods"][0]["instructions"]] == ["iconst_1", "ireturn"]

    def test_asm_without_machine_code(self, result: CompileResult) -> None:
        # brainfuck stops at its own IR
        assert _text(result, "asm", "json") == "null\n"
        assert _text(result, "asm", "txt") == ""

    def test_cfg_txt(self, result: CompileResult) -> None:
        lines = _text(result, "cfg", "txt").splitlines()
        assert lines[0] == "ADD 1 -[next]-> JZ 3"
        assert "JZ 3 -[jump]-> OUTPUT" in lines
        assert "JNZ 1 -[jump]-> ADD -1" in lines

    def test_graph_json_matches_result(self, result: CompileResult) -> None:
        assert json.loads(_text(result, "graph", "json")) == result.graph.model_dump(mode="json")

    def test_graph_dot_escapes_labels(self, result: CompileResult) -> None:
        text = _text(result, "graph", "dot")
        assert text.startswith("digraph Pipeline {")
        assert 'label="lex: +"' in text

    def test_source(self, result: CompileResult) -> None:
        filename, media_type, content = export_artifact(result, "source", "txt")
        assert (filename, media_type, content) == ("source.bf", "text/plain", SOURCE.encode())

    def test_missing_artifact_exports_empty(self, result: CompileResult) -> None:
        lexed = result.model_copy(update={"records": (result.records[0], StageRecord.not_run("parse"))})
        assert _text(lexed, "ir", "json") == "null\n"
        assert _text(lexed, "ast", "txt") == ""
        assert _text(lexed, "cfg", "txt") == ""

    @pytest.mark.parametrize(
        ("artifact", "fmt", "message"),
        [
            ("bytecode", "json", "Unknown export artifact or format"),
            ("ast", "svg", "Unknown export artifact or format"),
            ("source", "json", "source cannot be exported as json"),
            ("graph", "txt", "supported: dot, json"),
        ],
    )
    def test_rejected_requests(self, result: CompileResult, artifact: str, fmt: str, message: str) -> None:
        with pytest.raises(InvalidOptionError, match=message):
            export_artifact(result, artifact, fmt)


# ============================================================================
# Bundle
# ============================================================================


class TestExportBundle:
    def test_contents(self, result: CompileResult) -> None:
        with zipfile.ZipFile(io.BytesIO(export_bundle(result))) as zf:
            names = set(zf.namelist())
            summary = json.loads(zf.read("summary.json"))
            source = zf.read("source.bf")
        assert names == {
            "tokens.json",
            "ast.json",
            "ir.json",
            "ir.txt",
            "asm.txt",
            "cfg.dot",
            "graph.json",
            "source.bf",
            "summary.json",
        }
        assert source == SOURCE.encode()
        assert summary["job_id"] == result.job_id
        assert summary["status"] == "succeeded"
        assert [s["name"] for s in summary["stages"]] == ["lex", "parse", "ir", "execute"]
        assert summary["total_duration_ms"] == sum(s["duration_ms"] for s in summary["stages"])
