"""Parsers for the embedded Brainfuck toolchain (parse, ir and execute stages)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import ArtifactKind, SandboxResult, StageArtifact
from compilerhub.parsers.common import ParsedStage, load_json, positive, tree_collector
from compilerhub.parsers.diagnostics import parse_diagnostics
from compilerhub.parsers.listing import ListedFunction, ListedInstruction, instruction_graph

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext

_ARG_OPS = frozenset({"ADD", "MOVE", "SET", "JZ", "JNZ"})
PROGRAM_FUNCTION = "program"


def _document(result: SandboxResult, what: str, key: str) -> dict[str, Any]:
    data = load_json(result.stdout, what)
    if not isinstance(data, dict) or key not in data:
        raise ParseFailureError(f"{what}: missing {key!r}")
    return data


def parse_bf_ast(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    tree = _document(result, "brainfuck AST", "ast")["ast"]
    collector = tree_collector(tree)
    return ParsedStage(artifact=collector.artifact(ArtifactKind.AST, payload=tree), diagnostics=diagnostics)


def ir_listing(instructions: list[dict[str, Any]]) -> ListedFunction:
    """IR as a single listed function; loop jumps land after the matching bracket."""
    fn = ListedFunction(name=PROGRAM_FUNCTION)
    for index, item in enumerate(instructions):
        op = item["op"]
        ins = ListedInstruction(
            offset=index,
            op=op,
            args=str(item.get("arg", 0)) if op in _ARG_OPS else "",
            line=positive(item.get("line")),
        )
        if op in ("JZ", "JNZ"):
            ins.jumps.append(int(item["arg"]) + 1)
        fn.instructions.append(ins)
    return fn


def parse_bf_ir(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    document = _document(result, "brainfuck IR", "instructions")
    instructions = document["instructions"]
    payload = {"format": "brainfuck-ir", "optimized": bool(document.get("optimized")), "instructions": instructions}
    artifact = instruction_graph([ir_listing(instructions)], prefix="ir", kind=ArtifactKind.IR, payload=payload)
    return ParsedStage(artifact=artifact, diagnostics=diagnostics)


def parse_bf_execution(context: StageContext, result: SandboxResult) -> ParsedStage:
    """Final machine state; a runtime error still carries the partial state."""
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name, "ir.json")))
    if not result.stdout.strip():
        return ParsedStage(diagnostics=diagnostics, success=False)
    state = _document(result, "brainfuck execution state", "output")
    return ParsedStage(artifact=StageArtifact(kind=ArtifactKind.EXECUTION, payload=state), diagnostics=diagnostics)
