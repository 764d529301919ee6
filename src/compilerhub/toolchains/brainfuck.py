"""Embedded Brainfuck toolchain: lexer, parser, IR builder and interpreter.

Each phase is a subcommand so the pipeline can run it as a separate sandboxed
stage::

    python -m compilerhub.toolchains.brainfuck lex main.bf
    python -m compilerhub.toolchains.brainfuck parse main.bf
    python -m compilerhub.toolchains.brainfuck ir main.bf --optimize   # also writes ir.json
    python -m compilerhub.toolchains.brainfuck execute ir.json --trace

Every subcommand prints one JSON document on stdout; errors go to stderr in
``file:line:col: error: message`` form and set exit status 1.
"""

from __future__ import annotations

import json
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Final

import click

from compilerhub import constants

COMMANDS: Final[dict[str, str]] = {
    ">": "MOVE_RIGHT",
    "<": "MOVE_LEFT",
    "+": "INCREMENT",
    "-": "DECREMENT",
    ".": "OUTPUT",
    ",": "INPUT",
    "[": "LOOP_START",
    "]": "LOOP_END",
}
"""Token type per command character; every other character is a comment."""

IR_FILENAME: Final[str] = "ir.json"


class BrainfuckError(Exception):
    """Syntax or runtime error at a source position."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int


@dataclass
class Node:
    """AST node: Program and Loop carry children, commands are leaves."""

    type: str
    line: int
    column: int
    value: str | None = None
    children: list[Node] = field(default_factory=list)


@dataclass
class Instruction:
    """IR instruction.

    ADD n, MOVE n, OUTPUT, INPUT, SET n, and the loop pair JZ/JNZ whose arg
    is the index of the matching instruction.
    """

    op: str
    arg: int = 0
    line: int = 0
    column: int = 0


# =============================================================================
# Phases
# =============================================================================


def lex(source: str) -> list[Token]:
    tokens: list[Token] = []
    line, column = 1, 1
    for ch in source:
        if ch in COMMANDS:
            tokens.append(Token(COMMANDS[ch], ch, line, column))
        if ch == "\n":
            line += 1
            column = 1
        else:
            column += 1
    return tokens


def parse(tokens: list[Token]) -> Node:
    """Build the AST.

    Raises:
        BrainfuckError: unmatched bracket, positioned at the offending bracket.
    """
    root = Node("Program", 1, 1)
    stack = [root]
    open_tokens: list[Token] = []
    for token in tokens:
        if token.type == "LOOP_START":
            loop = Node("Loop", token.line, token.column)
            stack[-1].children.append(loop)
            stack.append(loop)
            open_tokens.append(token)
        elif token.type == "LOOP_END":
            if len(stack) == 1:
                raise BrainfuckError("unmatched ']'", token.line, token.column)
            stack.pop()
            open_tokens.pop()
        else:
            stack[-1].children.append(Node(token.type, token.line, token.column, value=token.value))
    if open_tokens:
        token = open_tokens[-1]
        raise BrainfuckError("unmatched '['", token.line, token.column)
    return root


_DELTA: Final[dict[str, tuple[str, int]]] = {
    "INCREMENT": ("ADD", 1),
    "DECREMENT": ("ADD", -1),
    "MOVE_RIGHT": ("MOVE", 1),
    "MOVE_LEFT": ("MOVE", -1),
}


def build_ir(program: Node, *, optimize: bool = False) -> list[Instruction]:
    """Lower the AST to IR.

    With optimize, runs of ADD/MOVE are folded, zero-sum runs dropped and
    ``[-]`` / ``[+]`` become ``SET 0``.
    """
    code: list[Instruction] = []

    def emit(nodes: list[Node]) -> None:
        for node in nodes:
            if node.type == "Loop":
                if (
                    optimize
                    and len(node.children) == 1
                    and node.children[0].type in ("INCREMENT", "DECREMENT")
                ):
                    code.append(Instruction("SET", 0, node.line, node.column))
                    continue
                start = len(code)
                code.append(Instruction("JZ", 0, node.line, node.column))
                emit(node.children)
                code.append(Instruction("JNZ", start, node.line, node.column))
                code[start].arg = len(code) - 1
            elif node.type in _DELTA:
                op, delta = _DELTA[node.type]
                prev = code[-1] if code else None
                if optimize and prev is not None and prev.op == op:
                    prev.arg += delta
                    if prev.arg == 0:
                        code.pop()
                    continue
                code.append(Instruction(op, delta, node.line, node.column))
            elif node.type == "OUTPUT":
                code.append(Instruction("OUTPUT", 0, node.line, node.column))
            elif node.type == "INPUT":
                code.append(Instruction("INPUT", 0, node.line, node.column))

    emit(program.children)
    return code


@dataclass
class ExecutionState:
    output: bytearray = field(default_factory=bytearray)
    pointer: int = 0
    steps: int = 0
    trace: list[dict[str, Any]] = field(default_factory=list)


def execute(
    code: list[Instruction],
    stdin: bytes = b"",
    *,
    trace: bool = False,
    tape_size: int = constants.BRAINFUCK_TAPE_SIZE,
    state: ExecutionState | None = None,
) -> tuple[ExecutionState, bytearray]:
    """Interpret IR. Cells are bytes and wrap; reading past EOF stores 0.

    Pass a state to observe partial progress when a BrainfuckError is raised.

    Raises:
        BrainfuckError: data pointer moved off the tape.
    """
    tape = bytearray(tape_size)
    state = state if state is not None else ExecutionState()
    ip = 0
    in_pos = 0
    while ip < len(code):
        ins = code[ip]
        state.steps += 1
        if trace and len(state.trace) < constants.BRAINFUCK_TRACE_LIMIT:
            state.trace.append(
                {"step": state.steps, "ip": ip, "op": ins.op, "arg": ins.arg, "pointer": state.pointer,
                 "cell": tape[state.pointer]}
            )  # fmt: skip
        match ins.op:
            case "ADD":
                tape[state.pointer] = (tape[state.pointer] + ins.arg) % 256
            case "MOVE":
                state.pointer += ins.arg
                if not 0 <= state.pointer < tape_size:
                    raise BrainfuckError(
                        f"data pointer out of range ({state.pointer}, tape size {tape_size})", ins.line, ins.column
                    )
            case "SET":
                tape[state.pointer] = ins.arg % 256
            case "OUTPUT":
                state.output.append(tape[state.pointer])
            case "INPUT":
                tape[state.pointer] = stdin[in_pos] if in_pos < len(stdin) else 0
                in_pos += 1
            case "JZ":
                if tape[state.pointer] == 0:
                    ip = ins.arg
            case "JNZ":
                if tape[state.pointer] != 0:
                    ip = ins.arg
        ip += 1
    return state, tape


# =============================================================================
# Serialization
# =============================================================================


def node_to_dict(node: Node) -> dict[str, Any]:
    data: dict[str, Any] = {"type": node.type, "line": node.line, "column": node.column}
    if node.value is not None:
        data["value"] = node.value
    if node.children or node.type in ("Program", "Loop"):
        data["children"] = [node_to_dict(child) for child in node.children]
    return data


def ir_from_json(data: dict[str, Any]) -> list[Instruction]:
    return [Instruction(**item) for item in data["instructions"]]


def _tape_window(tape: bytearray, pointer: int) -> dict[str, Any]:
    half = constants.BRAINFUCK_TAPE_WINDOW // 2
    start = max(0, min(pointer - half, len(tape) - constants.BRAINFUCK_TAPE_WINDOW))
    return {"start": start, "cells": list(tape[start : start + constants.BRAINFUCK_TAPE_WINDOW])}


def _fail(path: Path, err: BrainfuckError, document: dict[str, Any] | None = None) -> None:
    if document is not None:
        click.echo(json.dumps(document))
    location = f"{err.line}:{err.column}:" if err.line is not None else ""
    click.echo(f"{path.name}:{location} error: {err.message}", err=True)
    sys.exit(1)


def _read_source(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


# =============================================================================
# CLI
# =============================================================================


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli() -> None:
    """Brainfuck toolchain phases."""


@cli.command("lex")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def lex_command(path: Path) -> None:
    tokens = lex(_read_source(path))
    click.echo(json.dumps({"tokens": [asdict(t) for t in tokens]}))


@cli.command("parse")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def parse_command(path: Path) -> None:
    try:
        ast = parse(lex(_read_source(path)))
    except BrainfuckError as e:
        _fail(path, e)
        return
    click.echo(json.dumps({"ast": node_to_dict(ast)}))


@cli.command("ir")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--optimize/--no-optimize", default=False, help="Fold runs and clear loops")
def ir_command(path: Path, optimize: bool) -> None:
    try:
        code = build_ir(parse(lex(_read_source(path))), optimize=optimize)
    except BrainfuckError as e:
        _fail(path, e)
        return
    document = {"optimized": optimize, "instructions": [asdict(ins) for ins in code]}
    Path(IR_FILENAME).write_text(json.dumps(document), encoding="utf-8")
    click.echo(json.dumps(document))


@cli.command("execute")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--trace/--no-trace", default=False, help="Record the first executed steps")
def execute_command(path: Path, trace: bool) -> None:
    code = ir_from_json(json.loads(path.read_text(encoding="utf-8")))
    stdin = sys.stdin.buffer.read() if not sys.stdin.isatty() else b""
    state = ExecutionState()
    try:
        _, tape = execute(code, stdin, trace=trace, state=state)
    except BrainfuckError as e:
        document = {
            "output": state.output.decode("latin-1"),
            "steps": state.steps,
            "pointer": state.pointer,
            "trace": state.trace,
        }
        _fail(path, e, document)
        return
    click.echo(
        json.dumps(
            {
                "output": state.output.decode("latin-1"),
                "steps": state.steps,
                "pointer": state.pointer,
                "tape": _tape_window(tape, state.pointer),
                "trace": state.trace,
            }
        )
    )


if __name__ == "__main__":
    cli()
