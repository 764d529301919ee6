"""Parsers for the Go toolchain stages.

- parse:     ``gofmt -e`` validates syntax; the canonical source it prints is
             tokenized and folded into a declaration/statement outline
- typecheck: ``go vet`` diagnostics
- codegen:   ``go build -gcflags=-S`` assembly listing (on stderr)
"""

from __future__ import annotations

import re
from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Final

from compilerhub.models import ArtifactKind, SandboxResult
from compilerhub.parsers.common import ParsedStage, UnitCollector
from compilerhub.parsers.diagnostics import has_errors, parse_diagnostics
from compilerhub.parsers.listing import ListedFunction, ListedInstruction, instruction_graph
from compilerhub.toolchains.lexer import Token, tokenize

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext

# =============================================================================
# Outline (parse stage)
# =============================================================================

_STATEMENTS: Final[dict[str, str]] = {
    "if": "IfStmt",
    "else": "ElseClause",
    "for": "ForStmt",
    "switch": "SwitchStmt",
    "select": "SelectStmt",
    "case": "CaseClause",
    "default": "CaseClause",
    "return": "ReturnStmt",
    "go": "GoStmt",
    "defer": "DeferStmt",
    "break": "BranchStmt",
    "continue": "BranchStmt",
    "goto": "BranchStmt",
    "fallthrough": "BranchStmt",
    "var": "VarDecl",
    "const": "ConstDecl",
}
_BLOCK_OWNERS: Final[frozenset[str]] = frozenset({"if", "else", "for", "switch", "select"})


class _Outline:
    def __init__(self) -> None:
        self.collector = UnitCollector("ast")
        self.tree: dict[str, Any] = {"kind": "File", "children": []}
        root = self.collector.add(label="File", kind="File")
        self.stack: list[tuple[str, dict[str, Any]]] = [(root, self.tree)]
        self.pending: tuple[str, dict[str, Any]] | None = None

    def add(self, kind: str, token: Token, name: str | None = None) -> tuple[str, dict[str, Any]]:
        parent_key, parent = self.stack[-1]
        key = self.collector.add(
            label=f"{kind} {name}" if name else kind, kind=kind, line=token.line, column=token.column
        )
        self.collector.relate(parent_key, key, "child")
        node: dict[str, Any] = {"kind": kind, "line": token.line, "children": []}
        if name:
            node["name"] = name
        parent["children"].append(node)
        return key, node


def _skip_parens(tokens: list[Token], i: int) -> int:
    """Index after the balanced group opening at tokens[i]."""
    depth = 0
    while i < len(tokens):
        if tokens[i].value == "(":
            depth += 1
        elif tokens[i].value == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return i


def go_outline(tokens: list[Token]) -> _Outline:
    """Fold a Go token stream into a coarse syntax tree.

    Declarations, statements and calls become nodes; braces give nesting.
    """
    out = _Outline()
    n = len(tokens)
    i = 0
    while i < n:
        tok = tokens[i]
        nxt = tokens[i + 1] if i + 1 < n else None
        if tok.type == "keyword":
            if tok.value == "package" and nxt is not None:
                out.add("PackageClause", tok, nxt.value)
                i += 2
                continue
            if tok.value == "import":
                decl_key, decl = out.add("ImportDecl", tok)
                out.stack.append((decl_key, decl))
                j = i + 1
                grouped = j < n and tokens[j].value == "("
                while j < n:
                    if tokens[j].type == "string":
                        out.add("ImportSpec", tokens[j], tokens[j].value.strip('"`'))
                        if not grouped:
                            break
                    elif grouped and tokens[j].value == ")":
                        break
                    j += 1
                out.stack.pop()
                i = j + 1
                continue
            if tok.value == "func":
                j = i + 1
                if j < n and tokens[j].value == "(":
                    j = _skip_parens(tokens, j)  # receiver, or literal parameters
                if len(out.stack) == 1 and j < n and tokens[j].type == "identifier":
                    out.pending = out.add("FuncDecl", tok, tokens[j].value)
                    i = j + 1
                else:
                    out.pending = out.add("FuncLit", tok)
                    i += 1
                continue
            if tok.value == "type" and nxt is not None and nxt.type == "identifier":
                out.add("TypeSpec", tok, nxt.value)
                i += 2
                continue
            if tok.value in ("struct", "interface"):
                out.pending = out.add("StructType" if tok.value == "struct" else "InterfaceType", tok)
                i += 1
                continue
            if tok.value in _STATEMENTS:
                node = out.add(_STATEMENTS[tok.value], tok)
                if tok.value in _BLOCK_OWNERS:
                    out.pending = node
                i += 1
                continue
        elif tok.value == "{":
            if out.pending is not None:
                out.stack.append(out.pending)
                out.pending = None
            else:
                out.stack.append(out.add("Block", tok))
        elif tok.value == "}":
            if len(out.stack) > 1:
                out.stack.pop()
        elif tok.type == "identifier" and len(out.stack) > 1:
            name = tok.value
            j = i
            while j + 2 < n and tokens[j + 1].value == "." and tokens[j + 2].type == "identifier":
                name += "." + tokens[j + 2].value
                j += 2
            if j + 1 < n and tokens[j + 1].value == "(":
                out.add("CallExpr", tok, name)
            i = j + 1
            continue
        i += 1
    return out


def parse_gofmt(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0 or has_errors(diagnostics):
        return ParsedStage(diagnostics=diagnostics, success=False)
    # gofmt prints the canonical form of the file; positions refer to it
    source = result.stdout if result.stdout.strip() else context.source_code
    tokens, _ = tokenize(source, "go")
    outline = go_outline(tokens)
    payload = {"ast": outline.tree, "tokens": [asdict(t) for t in tokens], "formatted": result.stdout}
    return ParsedStage(artifact=outline.collector.artifact(ArtifactKind.AST, payload=payload), diagnostics=diagnostics)


# =============================================================================
# Assembly (codegen stage)
# =============================================================================

# main.main STEXT size=... args=0x0 locals=0x0 funcid=0x0 align=0x0
_SYMBOL = re.compile(r"^(?P<name>\S+) (?P<type>S[A-Z]+)\b")
# \t0x0000 00000 (/tmp/chub-x/main.go:3)\tRET
_INSTRUCTION = re.compile(
    r"^\s+0x[0-9a-f]+ (?P<pc>\d+) \((?P<pos>[^)]*)\)\s+(?P<op>[A-Z][A-Z0-9.]*)\s*(?P<args>.*)$"
)
_POS_LINE = re.compile(r":(?P<line>\d+)$")
_CALL_TARGET = re.compile(r"(?P<name>[^\s,()]+)\(SB\)")
_JUMP_TARGET = re.compile(r"(?:^|[\s,])(?P<pc>\d+)$")
_PSEUDO_OPS: Final[frozenset[str]] = frozenset({"TEXT", "FUNCDATA", "PCDATA"})
_TERMINATORS: Final[frozenset[str]] = frozenset({"RET", "JMP", "B", "UNDEF"})


def _is_jump(op: str) -> bool:
    # amd64: JMP, JEQ, JLS...; arm64: B, BEQ, CBZ, TBNZ...
    return op.startswith(("J", "B", "CB", "TB")) and op not in ("BL", "BSWAPQ", "BSWAPL", "BTQ", "BTL", "BTSQ")


def parse_go_asm(text: str) -> list[ListedFunction]:
    functions: list[ListedFunction] = []
    current: ListedFunction | None = None
    for line in text.splitlines():
        if m := _SYMBOL.match(line):
            current = ListedFunction(name=m["name"]) if m["type"] == "STEXT" else None
            if current is not None:
                functions.append(current)
            continue
        if current is None:
            continue
        m = _INSTRUCTION.match(line)
        if m is None or m["op"] in _PSEUDO_OPS:
            continue
        op, args = m["op"], m["args"].strip()
        ins = ListedInstruction(offset=int(m["pc"]), op=op, args=args)
        if pos := _POS_LINE.search(m["pos"]):
            ins.line = int(pos["line"])
        if op == "CALL" and (target := _CALL_TARGET.search(args)):
            ins.call = target["name"]
        elif _is_jump(op) and (target := _JUMP_TARGET.search(args)):
            ins.jumps.append(int(target["pc"]))
        current.instructions.append(ins)
    return functions


def parse_go_build(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    functions = parse_go_asm(result.stderr)
    payload: dict[str, Any] = {"format": "go-asm", "functions": [fn.to_dict() for fn in functions]}
    artifact = instruction_graph(
        functions, prefix="asm", kind=ArtifactKind.ASSEMBLY, payload=payload, terminators=_TERMINATORS
    )
    return ParsedStage(artifact=artifact, diagnostics=diagnostics)
