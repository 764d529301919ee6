"""Diagnostics extraction from compiler stderr.

Recognized shapes:

- ``main.c:3:5: error: expected ';'``  (clang, swiftc, embedded toolchains)
- ``./main.go:4:2: declared and not used: x``  (go: no severity, means error)
- ``Main.java:3: error: ';' expected``  (javac: line only)
- ``clang: error: linker command failed``  (tool-level, no location)

Lines that match none of these (source excerpts, carets, notes continuation)
are ignored.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Final

from compilerhub.models import Diagnostic, SandboxResult, Severity
from compilerhub.parsers.common import ParsedStage, positive

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext

_SEVERITIES: Final[dict[str, Severity]] = {
    "error": Severity.ERROR,
    "fatal error": Severity.ERROR,
    "warning": Severity.WARNING,
    "note": Severity.NOTE,
    "remark": Severity.NOTE,
    "info": Severity.INFO,
}

_LOCATED = re.compile(
    r"^(?P<file>[^\s:][^:\n]*?):(?P<line>\d+):(?:(?P<col>\d+):)?\s*"
    r"(?:(?P<sev>fatal error|error|warning|note|remark|info):\s*)?"
    r"(?P<msg>\S.*)$"
)
_TOOL_LEVEL = re.compile(r"^(?P<tool>[\w.+/-]+): (?P<sev>fatal error|error|warning|note):\s*(?P<msg>.+)$")
# "vet: ./main.go:4:2: ..." style prefixes in front of a located message
_TOOL_PREFIX = re.compile(r"^[\w-]+: (?=[^\s:]+:\d+:)")


def parse_diagnostics(
    text: str,
    *,
    default_severity: Severity = Severity.ERROR,
    source_names: tuple[str, ...] | None = None,
) -> list[Diagnostic]:
    """Extract diagnostics in order of appearance.

    Args:
        text: Tool stderr (or combined output).
        default_severity: Severity for located lines without one (go).
        source_names: When given, located diagnostics for other files
            (system headers) keep their message but drop line/column.
    """
    diagnostics: list[Diagnostic] = []
    for raw in text.splitlines():
        line = _TOOL_PREFIX.sub("", raw.rstrip(), count=1)
        if not line:
            continue
        if m := _LOCATED.match(line):
            severity = _SEVERITIES.get(m["sev"] or "", default_severity)
            file = m["file"].removeprefix("./")
            in_source = source_names is None or file.rsplit("/", 1)[-1] in source_names
            diagnostics.append(
                Diagnostic(
                    severity=severity,
                    message=m["msg"].strip() if in_source else f"{file}:{m['line']}: {m['msg'].strip()}",
                    line=positive(m["line"]) if in_source else None,
                    column=positive(m["col"]) if in_source else None,
                )
            )
        elif m := _TOOL_LEVEL.match(line):
            diagnostics.append(Diagnostic(severity=_SEVERITIES[m["sev"]], message=f"{m['tool']}: {m['msg'].strip()}"))
    return diagnostics


def has_errors(diagnostics: list[Diagnostic] | tuple[Diagnostic, ...]) -> bool:
    return any(d.severity == Severity.ERROR for d in diagnostics)


def diagnostics_stage(context: StageContext, result: SandboxResult) -> ParsedStage:
    """Parser for stages whose only output is diagnostics (typecheck, link)."""
    return ParsedStage(diagnostics=tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,))))
