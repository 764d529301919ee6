"""Token-stream parsers: embedded lexer JSON and clang's raw token dump."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import ArtifactKind, SandboxResult, StageArtifact
from compilerhub.parsers.common import ParsedStage, UnitCollector, load_json, positive
from compilerhub.parsers.diagnostics import parse_diagnostics
from compilerhub.toolchains.lexer import KEYWORDS

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext


def tokens_artifact(tokens: list[dict[str, Any]]) -> StageArtifact:
    """One unit per token, chained in source order."""
    collector = UnitCollector("tok")
    keys = [
        collector.add(
            label=str(tok.get("value", "")),
            kind=str(tok.get("type", "token")),
            line=positive(tok.get("line")),
            column=positive(tok.get("column")),
        )
        for tok in tokens
    ]
    collector.chain(keys)
    return collector.artifact(ArtifactKind.TOKENS, payload=tokens)


def parse_token_json(context: StageContext, result: SandboxResult) -> ParsedStage:
    """Output of the embedded lexers: ``{"tokens": [{type, value, line, column}]}``."""
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    data = load_json(result.stdout, "token stream")
    tokens = data.get("tokens") if isinstance(data, dict) else None
    if not isinstance(tokens, list):
        raise ParseFailureError("token stream: missing 'tokens' list")
    return ParsedStage(artifact=tokens_artifact(tokens), diagnostics=diagnostics)


# identifier 'main'	 [LeadingSpace]	Loc=<main.c:1:5>
_CLANG_TOKEN = re.compile(
    r"^(?P<kind>\w+) '(?P<text>.*)'\s+(?:\[[^\]]*\]\s*)*Loc=<(?P<file>.+?):(?P<line>\d+):(?P<col>\d+)>"
)

_CLANG_KIND_MAP = {
    "numeric_constant": "number",
    "char_constant": "char",
    "wide_char_constant": "char",
    "utf8_char_constant": "char",
    "utf16_char_constant": "char",
    "utf32_char_constant": "char",
    "string_literal": "string",
    "wide_string_literal": "string",
    "utf8_string_literal": "string",
    "utf16_string_literal": "string",
    "utf32_string_literal": "string",
    "comment": "comment",
}
_CLANG_PUNCTUATION = frozenset({"l_paren", "r_paren", "l_brace", "r_brace", "l_square", "r_square", "semi", "comma"})
_ESCAPED_WHITESPACE = re.compile(r"^(?:\s|\\[ntvfr])*$")


def _classify_clang(kind: str, text: str, keywords: frozenset[str]) -> str:
    if kind in ("raw_identifier", "identifier"):
        return "keyword" if text in keywords else "identifier"
    if kind in _CLANG_KIND_MAP:
        return _CLANG_KIND_MAP[kind]
    if kind in _CLANG_PUNCTUATION:
        return "punctuation"
    if kind.startswith("kw_") or kind == text:
        return "keyword"
    return "operator"


def parse_clang_tokens(context: StageContext, result: SandboxResult) -> ParsedStage:
    """``clang -Xclang -dump-raw-tokens`` output (written to stderr).

    Raw lexing keeps whitespace and comments as tokens; both are dropped.
    Preprocessor lines show up as ``hash`` followed by raw identifiers.
    """
    keywords = KEYWORDS["cpp" if context.language == "cpp" else "c"]
    tokens: list[dict[str, Any]] = []
    other_lines: list[str] = []
    seen_dump = False
    for line in result.stderr.splitlines():
        m = _CLANG_TOKEN.match(line)
        if m is None:
            other_lines.append(line)
            continue
        seen_dump = True
        kind, text = m["kind"], m["text"]
        if kind in ("eof", "comment") or (kind == "unknown" and _ESCAPED_WHITESPACE.match(text)):
            continue
        tokens.append(
            {
                "type": _classify_clang(kind, text, keywords),
                "value": text,
                "line": int(m["line"]),
                "column": int(m["col"]),
                "clang_kind": kind,
            }
        )
    diagnostics = tuple(parse_diagnostics("\n".join(other_lines), source_names=(context.source_name,)))
    if not seen_dump and result.exit_code == 0 and context.source_code.strip():
        raise ParseFailureError("clang token dump: no tokens found in output")
    return ParsedStage(artifact=tokens_artifact(tokens), diagnostics=diagnostics)
