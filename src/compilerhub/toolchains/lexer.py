"""Embedded lexer for the C family, Java, Go and Swift.

Used as the lex stage of languages whose native toolchain has no usable
token dump, and in-process to build outlines from formatter output.

Run inside the sandbox as::

    python -m compilerhub.toolchains.lexer --language java Main.java

Prints ``{"language": ..., "tokens": [...]}`` as JSON on stdout and
gcc-style ``file:line:col: error: message`` lines on stderr. Exit status is
1 when any lexical error was found.
"""

from __future__ import annotations

import json
import re
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Final

import click

_C_KEYWORDS: Final[frozenset[str]] = frozenset(
    """auto break case char const continue default do double else enum extern float for goto if inline int
    long register restrict return short signed sizeof static struct switch typedef union unsigned void
    volatile while _Bool _Complex _Imaginary _Alignas _Alignof _Atomic _Generic _Noreturn _Static_assert
    _Thread_local""".split()
)

KEYWORDS: Final[dict[str, frozenset[str]]] = {
    "c": _C_KEYWORDS,
    "cpp": _C_KEYWORDS
    | frozenset(
        """alignas alignof and asm bool catch class concept consteval constexpr constinit const_cast co_await
        co_return co_yield decltype delete dynamic_cast explicit export false friend mutable namespace new
        noexcept not nullptr operator or private protected public reinterpret_cast requires static_assert
        static_cast template this thread_local throw true try typeid typename using virtual wchar_t xor""".split()
    ),
    "java": frozenset(
        """abstract assert boolean break byte case catch char class const continue default do double else enum
        extends final finally float for goto if implements import instanceof int interface long native new
        package private protected public return short static strictfp super switch synchronized this throw
        throws transient try void volatile while var record yield sealed permits true false null""".split()
    ),
    "go": frozenset(
        """break case chan const continue default defer else fallthrough for func go goto if import interface
        map package range return select struct switch type var""".split()
    ),
    "swift": frozenset(
        """associatedtype class deinit enum extension fileprivate func import init inout internal let open
        operator private precedencegroup protocol public rethrows static struct subscript typealias var break
        case catch continue default defer do else fallthrough for guard if in repeat return throw switch where
        while as false is nil self Self super throws true try await async""".split()
    ),
}
"""Reserved words per language."""

LANGUAGES: Final[tuple[str, ...]] = tuple(KEYWORDS)

# Longest first so that ">>=" wins over ">>" and ">"
_OPERATORS: Final[tuple[str, ...]] = tuple(
    sorted(
        {
            ">>>=", "<<=", ">>=", ">>>", "...", "->*", "<=>", "&^=", "&&=", "||=", "..<",
            "==", "!=", "<=", ">=", "&&", "||", "++", "--", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=",
            "<<", ">>", "->", "::", ":=", "<-", "&^", "??", "?.", "===", "!==",
            "+", "-", "*", "/", "%", "=", "<", ">", "!", "~", "&", "|", "^", "?", ":", ".", "@",
        },
        key=len,
        reverse=True,
    )
)  # fmt: skip

_PUNCTUATION: Final[frozenset[str]] = frozenset("(){}[];,")

_WHITESPACE = re.compile(r"[ \t\r\f\v]+")
_IDENTIFIER = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_NUMBER = re.compile(
    r"0[xX][0-9a-fA-F_']+[uUlL]*"
    r"|0[bB][01_']+[uUlL]*"
    r"|(?:\d[\d_']*)?\.?\d[\d_']*(?:[eE][+-]?\d+)?[a-zA-Z]*"
)


@dataclass(frozen=True)
class Token:
    """One lexical token. line/column are 1-based."""

    type: str
    value: str
    line: int
    column: int


@dataclass(frozen=True)
class LexError:
    message: str
    line: int
    column: int


class _Scanner:
    def __init__(self, source: str, language: str) -> None:
        self.source = source
        self.language = language
        self.keywords = KEYWORDS[language]
        self.pos = 0
        self.line = 1
        self.col = 1
        self.tokens: list[Token] = []
        self.errors: list[LexError] = []

    def _advance(self, text: str) -> None:
        newlines = text.count("\n")
        if newlines:
            self.line += newlines
            self.col = len(text) - text.rfind("\n")
        else:
            self.col += len(text)
        self.pos += len(text)

    def _emit(self, type_: str, text: str) -> None:
        self.tokens.append(Token(type_, text, self.line, self.col))
        self._advance(text)

    def _error(self, message: str) -> None:
        self.errors.append(LexError(message, self.line, self.col))

    def _at_line_start(self) -> bool:
        start = self.source.rfind("\n", 0, self.pos) + 1
        return not self.source[start : self.pos].strip()

    def _quoted(self, quote: str, kind: str, *, multiline: bool = False) -> bool:
        """Consume a quoted literal starting at pos. False when unterminated."""
        i = self.pos + len(quote)
        src = self.source
        while i < len(src):
            if src.startswith(quote, i):
                self._emit(kind, src[self.pos : i + len(quote)])
                return True
            ch = src[i]
            if ch == "\\" and quote != "`":
                i += 2
                continue
            if ch == "\n" and not multiline:
                break
            i += 1
        self._error(f"unterminated {kind.replace('_', ' ')} literal")
        self._advance(src[self.pos : i])
        return False

    def run(self) -> None:
        src = self.source
        c_family = self.language in ("c", "cpp")
        while self.pos < len(src):
            ch = src[self.pos]

            if ch == "\n":
                self._advance(ch)
                continue
            if m := _WHITESPACE.match(src, self.pos):
                self._advance(m.group())
                continue

            if src.startswith("//", self.pos):
                end = src.find("\n", self.pos)
                self._advance(src[self.pos : end if end != -1 else len(src)])
                continue
            if src.startswith("/*", self.pos):
                end = src.find("*/", self.pos + 2)
                if end == -1:
                    self._error("unterminated comment")
                    self._advance(src[self.pos :])
                    return
                self._advance(src[self.pos : end + 2])
                continue

            if c_family and ch == "#" and self._at_line_start():
                end = self.pos
                # Directives continue over backslash-newline
                while True:
                    nl = src.find("\n", end)
                    if nl == -1:
                        end = len(src)
                        break
                    if src[nl - 1] != "\\":
                        end = nl
                        break
                    end = nl + 1
                self._emit("preprocessor", src[self.pos : end].rstrip())
                continue

            if self.language == "swift" and src.startswith('"""', self.pos):
                if not self._quoted('"""', "string", multiline=True):
                    return
                continue
            if ch == '"':
                if not self._quoted('"', "string"):
                    return
                continue
            if ch == "`" and self.language == "go":
                if not self._quoted("`", "string", multiline=True):
                    return
                continue
            if ch == "'" and self.language != "swift":
                if not self._quoted("'", "char"):
                    return
                continue

            if m := _IDENTIFIER.match(src, self.pos):
                word = m.group()
                self._emit("keyword" if word in self.keywords else "identifier", word)
                continue
            if ch.isdigit() or (ch == "." and self.pos + 1 < len(src) and src[self.pos + 1].isdigit()):
                m = _NUMBER.match(src, self.pos)
                if m and m.group():
                    self._emit("number", m.group())
                    continue

            if ch in _PUNCTUATION:
                self._emit("punctuation", ch)
                continue
            op = next((op for op in _OPERATORS if src.startswith(op, self.pos)), None)
            if op is not None:
                self._emit("operator", op)
                continue
            if ch == "#" and self.language == "swift":
                # Compiler directives and literals such as #if, #file
                m = _IDENTIFIER.match(src, self.pos + 1)
                self._emit("directive", "#" + (m.group() if m else ""))
                continue

            self._error(f"unexpected character {ch!r}")
            self._advance(ch)


def tokenize(source: str, language: str) -> tuple[list[Token], list[LexError]]:
    """Split source into tokens. Never raises on malformed input.

    Lexing stops at the first unterminated string or comment; unexpected
    characters are reported and skipped.

    Raises:
        KeyError: language has no keyword table.
    """
    scanner = _Scanner(source, language)
    scanner.run()
    return scanner.tokens, scanner.errors


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-l", "--language", type=click.Choice(LANGUAGES), required=True)
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def main(language: str, path: Path) -> None:
    """Tokenize PATH and print the tokens as JSON."""
    source = path.read_text(encoding="utf-8", errors="replace")
    tokens, errors = tokenize(source, language)
    click.echo(json.dumps({"language": language, "tokens": [asdict(t) for t in tokens]}))
    for err in errors:
        click.echo(f"{path.name}:{err.line}:{err.column}: error: {err.message}", err=True)
    sys.exit(1 if errors else 0)


if __name__ == "__main__":
    main()
