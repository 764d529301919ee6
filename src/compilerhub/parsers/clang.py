"""Parser for clang's JSON AST dump (``-Xclang -ast-dump=json``).

clang writes source locations delta-encoded: ``file`` and ``line`` are only
present when they differ from the previously written location. The walker
therefore visits every node in document order, including nodes it drops,
to keep the current file/line accurate.

Implicit declarations and everything that does not originate in the main
source file (system headers) are dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import ArtifactKind, SandboxResult
from compilerhub.parsers.common import ParsedStage, UnitCollector, load_json
from compilerhub.parsers.diagnostics import parse_diagnostics

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext


@dataclass
class _Cursor:
    file: str | None = None
    line: int | None = None

    def visit(self, loc: Any) -> tuple[int | None, int | None]:
        """Apply one serialized location; returns (line, col) when the location is valid."""
        if not isinstance(loc, dict) or not loc:
            return None, None
        # Macro expansions carry spelling/expansion sub-locations, written in that order
        for sub in ("spellingLoc", "expansionLoc"):
            if sub in loc:
                line, col = self.visit(loc[sub])
                if sub == "expansionLoc":
                    return line, col
        if "file" in loc:
            self.file = loc["file"]
        if "line" in loc:
            self.line = loc["line"]
        col = loc.get("col")
        return (self.line, col) if col is not None else (None, None)


def _label(node: dict[str, Any]) -> str:
    kind = str(node.get("kind", "Node"))
    for attr in ("name", "opcode", "value", "castKind"):
        value = node.get(attr)
        if value not in (None, ""):
            return f"{kind} {value}"
    return kind


def _summary(node: dict[str, Any], line: int | None) -> dict[str, Any]:
    out: dict[str, Any] = {"kind": node.get("kind")}
    for attr in ("name", "opcode", "value"):
        if attr in node:
            out[attr] = node[attr]
    qual = (node.get("type") or {}).get("qualType") if isinstance(node.get("type"), dict) else None
    if qual:
        out["type"] = qual
    if line is not None:
        out["line"] = line
    out["children"] = []
    return out


def parse_clang_ast(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0 and not result.stdout.strip():
        return ParsedStage(diagnostics=diagnostics, success=False)

    root = load_json(result.stdout, "clang AST")
    if not isinstance(root, dict) or root.get("kind") != "TranslationUnitDecl":
        raise ParseFailureError("clang AST: top-level node is not a TranslationUnitDecl")

    collector = UnitCollector("ast")
    cursor = _Cursor()
    tree = _summary(root, None)
    root_key = collector.add(label="TranslationUnitDecl", kind="TranslationUnitDecl")

    # (node, parent_key, parent_summary, keep): keep=False walks only to advance the cursor
    stack: list[tuple[dict[str, Any], str | None, dict[str, Any] | None, bool]] = [
        (child, root_key, tree, True) for child in reversed(root.get("inner", []))
    ]
    while stack:
        node, parent_key, parent_summary, keep = stack.pop()
        if not isinstance(node, dict):
            continue
        line, col = cursor.visit(node.get("loc"))
        rng = node.get("range") or {}
        begin_line, begin_col = cursor.visit(rng.get("begin"))
        cursor.visit(rng.get("end"))
        if line is None:
            line, col = begin_line, begin_col

        if keep and parent_key == root_key:
            # Top-level: keep only declarations written in the submitted file
            keep = _in_source(cursor, context.source_name)
        if keep and node.get("isImplicit"):
            keep = False

        key: str | None = None
        summary: dict[str, Any] | None = None
        if keep and parent_key is not None and parent_summary is not None:
            key = collector.add(label=_label(node), kind=str(node.get("kind", "Node")), line=line, column=col)
            collector.relate(parent_key, key, "child")
            summary = _summary(node, line)
            parent_summary["children"].append(summary)

        stack.extend((child, key, summary, keep) for child in reversed(node.get("inner", [])))

    return ParsedStage(artifact=collector.artifact(ArtifactKind.AST, payload=tree), diagnostics=diagnostics)


def _in_source(cursor: _Cursor, source_name: str) -> bool:
    return cursor.file is not None and cursor.file.rsplit("/", 1)[-1] == source_name
