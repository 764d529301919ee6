"""Parsers for swiftc output: ``-dump-parse`` S-expressions and SIL."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import ArtifactKind, SandboxResult
from compilerhub.parsers.common import ParsedStage, UnitCollector
from compilerhub.parsers.diagnostics import has_errors, parse_diagnostics
from compilerhub.parsers.listing import block_graph

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext

_HEAD = re.compile(r"\(\s*(?P<kind>[A-Za-z_][\w]*)")
_NAME = re.compile(r"""(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)')""")
_RANGE = re.compile(r"range=\[[^\]:]*?:(?P<line>\d+):(?P<col>\d+)")


def _split_nodes(text: str) -> list[tuple[int, int]]:
    """(start, depth) of every ``(`` outside quoted strings, in document order."""
    opens: list[tuple[int, int]] = []
    depth = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in "\"'":
            end = text.find(ch, i + 1)
            newline = text.find("\n", i + 1)
            # An unmatched quote on its line is a literal character
            if end != -1 and (newline == -1 or end < newline):
                i = end + 1
                continue
        elif ch == "(":
            opens.append((i, depth))
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        i += 1
    return opens


def parse_swift_dump(text: str) -> tuple[UnitCollector, dict[str, Any]]:
    """Fold ``swiftc -dump-parse`` output into units and a nested summary."""
    start = text.find("(source_file")
    if start == -1:
        raise ParseFailureError("swift AST: no (source_file ...) node in output")
    text = text[start:]
    collector = UnitCollector("ast")
    tree: dict[str, Any] | None = None
    # depth -> (key, summary) of the most recent node at that depth
    open_nodes: dict[int, tuple[str, dict[str, Any]]] = {}
    for pos, depth in _split_nodes(text):
        head_end = text.find("\n", pos)
        header = text[pos : head_end if head_end != -1 else len(text)]
        m = _HEAD.match(header)
        if m is None:
            continue
        kind = m["kind"]
        rest = header[m.end() :]
        name_match = _NAME.match(rest.lstrip())
        name = (name_match["dq"] if name_match["dq"] is not None else name_match["sq"]) if name_match else None
        line = col = None
        if r := _RANGE.search(header):
            line, col = int(r["line"]), int(r["col"])
        key = collector.add(label=f"{kind} {name}" if name else kind, kind=kind, line=line, column=col)
        summary: dict[str, Any] = {"kind": kind, "children": []}
        if name:
            summary["name"] = name
        if line is not None:
            summary["line"] = line
        parent = next((open_nodes[d] for d in range(depth - 1, -1, -1) if d in open_nodes), None)
        if parent is None:
            tree = tree or summary
        else:
            collector.relate(parent[0], key, "child")
            parent[1]["children"].append(summary)
        open_nodes[depth] = (key, summary)
        for deeper in [d for d in open_nodes if d > depth]:
            del open_nodes[deeper]
    return collector, tree or {"kind": "source_file", "children": []}


def parse_swift_ast(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0 or has_errors(diagnostics):
        return ParsedStage(diagnostics=diagnostics, success=False)
    # Depending on the swiftc release the dump goes to stdout or stderr
    text = result.stdout if "(source_file" in result.stdout else result.stderr
    collector, tree = parse_swift_dump(text)
    return ParsedStage(artifact=collector.artifact(ArtifactKind.AST, payload=tree), diagnostics=diagnostics)


# sil [ossa] @$s4main3addyS2i_SitF : $@convention(thin) (Int, Int) -> Int {
_SIL_FUNCTION = re.compile(r"^sil\b[^@]*@(?P<name>[\w$.]+)\s*:.*\{\s*$")
# bb0(%0 : $Int, %1 : $Int):  /  bb1:
_SIL_BLOCK = re.compile(r"^(?P<label>bb\d+)\b.*:")
_SIL_TARGET = re.compile(r"\b(?P<label>bb\d+)\b")
_SIL_CALL = re.compile(r"function_ref @(?P<name>[\w$.]+)")
_DEMANGLED = re.compile(r"^// (?P<demangled>.+)$")


def parse_sil(text: str) -> list[dict[str, Any]]:
    functions: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    block: dict[str, Any] | None = None
    last_comment: str | None = None
    for raw in text.splitlines():
        line = raw.rstrip()
        if current is None:
            if m := _DEMANGLED.match(line):
                last_comment = m["demangled"]
            elif m := _SIL_FUNCTION.match(line):
                current = {"name": m["name"], "demangled": last_comment, "blocks": []}
                block = None
            elif line:
                last_comment = None
            continue
        code = line.split("//", 1)[0].rstrip()
        # } // end sil function '$s4main3addyS2i_SitF'
        if code == "}":
            functions.append(current)
            current = None
            last_comment = None
            continue
        if not code:
            continue
        if m := _SIL_BLOCK.match(code):
            block = {"label": m["label"], "instructions": []}
            current["blocks"].append(block)
            continue
        if block is None:
            block = {"label": "bb0", "instructions": []}
            current["blocks"].append(block)
        block["instructions"].append(code.strip())
    return functions


def parse_swift_sil(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    functions = parse_sil(result.stdout)
    if not functions and "sil_stage" not in result.stdout:
        raise ParseFailureError("SIL: output contains no sil_stage header")
    artifact = block_graph(
        functions,
        prefix="sil",
        kind=ArtifactKind.IR,
        target_pattern=_SIL_TARGET,
        call_pattern=_SIL_CALL,
        payload={"format": "sil", "functions": functions},
    )
    return ParsedStage(artifact=artifact, diagnostics=diagnostics)
