"""Embedded Java outline parser.

javac has no syntax-only mode that prints a tree, so the parse stage folds
the embedded lexer's tokens into a declaration/statement outline instead::

    python -m compilerhub.toolchains.javaparse Main.java

Prints ``{"ast": {...}}`` on stdout. Nodes have ``type``, ``line``,
``column``, an optional ``value`` (the declared or called name) and
``children``. Unbalanced brackets and lexical errors go to stderr in
``file:line:col: error: message`` form and set exit status 1; the outline
is still printed.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import click

from compilerhub.toolchains.lexer import LexError, Token, tokenize

_TYPE_DECLS: Final[dict[str, str]] = {
    "class": "ClassDecl",
    "interface": "InterfaceDecl",
    "enum": "EnumDecl",
    "record": "RecordDecl",
}

_STATEMENTS: Final[dict[str, str]] = {
    "if": "IfStmt",
    "else": "ElseClause",
    "for": "ForStmt",
    "while": "WhileStmt",
    "do": "DoStmt",
    "switch": "SwitchStmt",
    "case": "CaseClause",
    "default": "CaseClause",
    "try": "TryStmt",
    "catch": "CatchClause",
    "finally": "FinallyClause",
    "synchronized": "SynchronizedStmt",
    "return": "ReturnStmt",
    "throw": "ThrowStmt",
    "break": "BreakStmt",
    "continue": "ContinueStmt",
    "yield": "YieldStmt",
    "assert": "AssertStmt",
}
_BLOCK_OWNERS: Final[frozenset[str]] = frozenset(
    {"if", "else", "for", "while", "do", "switch", "try", "catch", "finally", "synchronized"}
)

_PAIRS: Final[dict[str, str]] = {"(": ")", "[": "]", "{": "}"}
_CLOSERS: Final[dict[str, str]] = {v: k for k, v in _PAIRS.items()}


@dataclass
class Node:
    type: str
    line: int
    column: int
    value: str | None = None
    children: list[Node] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "line": self.line, "column": self.column}
        if self.value is not None:
            data["value"] = self.value
        data["children"] = [child.to_dict() for child in self.children]
        return data


def check_brackets(tokens: list[Token]) -> list[LexError]:
    """Unmatched, mismatched and unclosed brackets, in source order."""
    errors: list[LexError] = []
    open_: list[Token] = []
    for tok in tokens:
        if tok.type != "punctuation":
            continue
        if tok.value in _PAIRS:
            open_.append(tok)
        elif tok.value in _CLOSERS:
            if not open_:
                errors.append(LexError(f"unmatched '{tok.value}'", tok.line, tok.column))
                continue
            opener = open_.pop()
            if _PAIRS[opener.value] != tok.value:
                errors.append(
                    LexError(
                        f"'{_PAIRS[opener.value]}' expected to close '{opener.value}' "
                        f"from line {opener.line}, found '{tok.value}'",
                        tok.line,
                        tok.column,
                    )
                )
    for opener in open_:
        errors.append(
            LexError(
                f"reached end of file while parsing: '{opener.value}' is never closed",
                opener.line,
                opener.column,
            )
        )
    return errors


def _skip_group(tokens: list[Token], i: int) -> int:
    """Index after the balanced bracket group opening at tokens[i]."""
    opener = tokens[i].value
    closer = _PAIRS[opener]
    depth = 0
    while i < len(tokens):
        if tokens[i].value == opener:
            depth += 1
        elif tokens[i].value == closer:
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return i


def _header_end(tokens: list[Token], i: int) -> int:
    """Index of the '{' or ';' ending a declaration header that continues at tokens[i]."""
    while i < len(tokens) and tokens[i].value not in ("{", ";"):
        i = _skip_group(tokens, i) if tokens[i].value in _PAIRS else i + 1
    return i


def _dotted(tokens: list[Token], i: int) -> tuple[str, int]:
    """Qualified name starting at tokens[i] and the index after it."""
    name = tokens[i].value
    j = i
    while j + 2 < len(tokens) and tokens[j + 1].value == "." and tokens[j + 2].value not in ("(", ";"):
        name += "." + tokens[j + 2].value
        j += 2
    return name, j + 1


class _Folder:
    def __init__(self) -> None:
        self.root = Node("CompilationUnit", 1, 1)
        self.stack: list[Node] = [self.root]
        self.pending: Node | None = None
        # Enum bodies list their constants before the first ';'
        self.enum_members: set[int] = set()

    @property
    def top(self) -> Node:
        return self.stack[-1]

    def add(self, type_: str, tok: Token, value: str | None = None) -> Node:
        node = Node(type_, tok.line, tok.column, value)
        self.top.children.append(node)
        return node

    def in_type_body(self) -> bool:
        return self.top.type in _TYPE_DECLS.values()

    def in_enum_constants(self) -> bool:
        return self.top.type == "EnumDecl" and id(self.top) not in self.enum_members


def outline(tokens: list[Token]) -> Node:
    """Fold a Java token stream into a coarse syntax tree.

    Type, field and method declarations, statements, calls and object
    creations become nodes; braces give nesting.
    """
    out = _Folder()
    n = len(tokens)
    i = 0
    while i < n:
        tok = tokens[i]
        nxt = tokens[i + 1] if i + 1 < n else None

        if tok.value == "@" and nxt is not None and nxt.type == "identifier":
            # Annotation, with or without arguments
            _, i = _dotted(tokens, i + 1)
            if i < n and tokens[i].value == "(":
                i = _skip_group(tokens, i)
            continue

        if tok.type == "keyword":
            if tok.value in ("package", "import") and nxt is not None:
                j = i + 1
                if tokens[j].value == "static" and j + 1 < n:
                    j += 1
                name, j = _dotted(tokens, j)
                out.add("PackageDecl" if tok.value == "package" else "ImportDecl", tok, name)
                while j < n and tokens[j].value != ";":
                    j += 1
                i = j + 1
                continue
            if tok.value in _TYPE_DECLS and nxt is not None and nxt.type == "identifier":
                out.pending = out.add(_TYPE_DECLS[tok.value], tok, nxt.value)
                # Type parameters, record components, extends and implements clauses
                i = _header_end(tokens, i + 2)
                continue
            if tok.value == "new" and nxt is not None and nxt.type == "identifier":
                name, i = _dotted(tokens, i + 1)
                out.add("NewExpr", tok, name)
                continue
            if tok.value in _STATEMENTS and not out.in_type_body():
                node = out.add(_STATEMENTS[tok.value], tok)
                i += 1
                if tok.value in _BLOCK_OWNERS:
                    out.pending = node
                    if i < n and tokens[i].value == "(":
                        i = _skip_group(tokens, i)
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
        elif tok.value == ";":
            out.pending = None
            if out.top.type == "EnumDecl":
                out.enum_members.add(id(out.top))
        elif tok.type == "identifier" and out.in_enum_constants():
            out.add("EnumConstant", tok, tok.value)
            i += 1
            if i < n and tokens[i].value == "(":
                i = _skip_group(tokens, i)
            continue
        elif tok.type == "identifier" and out.in_type_body() and nxt is not None:
            if nxt.value == "(":
                owner = out.top.value
                node = out.add("ConstructorDecl" if tok.value == owner else "MethodDecl", tok, tok.value)
                out.pending = node
                # Parameters and throws clause
                i = _header_end(tokens, i + 1)
                continue
            if nxt.value in ("=", ";", ","):
                out.add("FieldDecl", tok, tok.value)
                i += 1
                if nxt.value == "=":
                    # Skip the initializer up to the end of the declarator
                    while i < n and tokens[i].value not in (";", ","):
                        i = _skip_group(tokens, i) if tokens[i].value in _PAIRS else i + 1
                continue
        elif tok.type == "identifier" and len(out.stack) > 1 and not out.in_type_body():
            name, j = _dotted(tokens, i)
            if j < n and tokens[j].value == "(":
                out.add("MethodCall", tok, name)
            i = j
            continue
        i += 1
    return out.root


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def main(path: Path) -> None:
    """Print the outline of the Java file PATH as JSON."""
    source = path.read_text(encoding="utf-8", errors="replace")
    tokens, lex_errors = tokenize(source, "java")
    errors = sorted([*lex_errors, *check_brackets(tokens)], key=lambda e: (e.line, e.column))
    click.echo(json.dumps({"ast": outline(tokens).to_dict()}))
    for err in errors:
        click.echo(f"{path.name}:{err.line}:{err.column}: error: {err.message}", err=True)
    sys.exit(1 if errors else 0)


if __name__ == "__main__":
    main()
