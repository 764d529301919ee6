"""Parser for textual LLVM IR (``clang -S -emit-llvm``).

Produces function and basic-block units with control-flow (``branch``) and
``call`` relations. Instruction text is kept in the payload only.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import ArtifactKind, SandboxResult
from compilerhub.parsers.common import ParsedStage
from compilerhub.parsers.diagnostics import parse_diagnostics
from compilerhub.parsers.listing import block_graph

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext

LL_FILENAME = "main.ll"

_DEFINE = re.compile(r"^define\b.*?@(?P<name>\"[^\"]+\"|[\w.$-]+)\s*\(")
_LABEL = re.compile(r"^(?P<label>[\w.$-]+|\"[^\"]+\"):")
_LABEL_REF = re.compile(r"label %(?P<label>[\w.$-]+|\"[^\"]+\")")
_CALL = re.compile(r"\b(?:call|invoke)\b.*?@(?P<name>\"[^\"]+\"|[\w.$-]+)\s*\(")


def parse_llvm_ir(text: str) -> list[dict[str, Any]]:
    """Split IR text into functions -> blocks -> instructions.

    A leading block without an explicit label is named ``entry``.
    """
    functions: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    block: dict[str, Any] | None = None
    for raw in text.splitlines():
        line = raw.split(";", 1)[0].rstrip() if not raw.lstrip().startswith(";") else ""
        if not line:
            continue
        if current is None:
            if m := _DEFINE.match(line):
                current = {"name": m["name"].strip('"'), "blocks": []}
                block = None
            continue
        if line == "}":
            functions.append(current)
            current = None
            continue
        if m := _LABEL.match(line):
            block = {"label": m["label"].strip('"'), "instructions": []}
            current["blocks"].append(block)
            continue
        if block is None:
            block = {"label": "entry", "instructions": []}
            current["blocks"].append(block)
        block["instructions"].append(line.strip())
    if current is not None:
        raise ParseFailureError(f"LLVM IR: function @{current['name']} is not terminated")
    return functions


def parse_llvm_codegen(context: StageContext, result: SandboxResult) -> ParsedStage:
    """Codegen stage: diagnostics from stderr, IR from the collected ``main.ll``."""
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    data = result.artifacts.get(LL_FILENAME)
    if data is None:
        raise ParseFailureError(f"LLVM IR: {LL_FILENAME} was not produced")
    functions = parse_llvm_ir(data.decode("utf-8", errors="replace"))
    artifact = block_graph(
        functions,
        prefix="ir",
        kind=ArtifactKind.IR,
        target_pattern=_LABEL_REF,
        call_pattern=_CALL,
        payload={"format": "llvm", "functions": functions},
    )
    return ParsedStage(
        artifact=artifact,
        diagnostics=diagnostics,
    )
