"""Swift adapter (embedded lexer, swiftc)."""

from __future__ import annotations

from compilerhub.adapters.base import PYTHON_TOOL, LanguageAdapter, StageContext, StageSpec, info, python_module
from compilerhub.models import CompileOptions, Diagnostic, Language
from compilerhub.parsers.diagnostics import diagnostics_stage
from compilerhub.parsers.swift import parse_swift_ast, parse_swift_sil
from compilerhub.parsers.tokens import parse_token_json


def _sil(ctx: StageContext) -> list[str]:
    argv = [ctx.tool("swiftc_bin"), "-emit-sil", "-Onone" if ctx.options.optimization.level == 0 else "-O"]
    if ctx.options.debug:
        argv.append("-g")
    return [*argv, ctx.source_name]


def _sil_notes(options: CompileOptions) -> list[Diagnostic]:
    if options.optimization.level > 0:
        return [info(f"swiftc has only -Onone and -O; {options.optimization.value} is compiled with -O")]
    return []


SWIFT_ADAPTER = LanguageAdapter(
    language=Language.SWIFT.value,
    source_name="main.swift",
    description="swift via swiftc",
    stages=(
        StageSpec(
            name="lex",
            command=lambda ctx: python_module(ctx, "lexer", "-l", "swift", ctx.source_name),
            parser=parse_token_json,
            analysis=True,
            tools=(PYTHON_TOOL,),
        ),
        StageSpec(
            name="parse",
            command=lambda ctx: [ctx.tool("swiftc_bin"), "-dump-parse", ctx.source_name],
            parser=parse_swift_ast,
            analysis=True,
            tools=("swiftc_bin",),
        ),
        StageSpec(
            name="typecheck",
            command=lambda ctx: [ctx.tool("swiftc_bin"), "-typecheck", ctx.source_name],
            parser=diagnostics_stage,
            tools=("swiftc_bin",),
        ),
        StageSpec(
            name="codegen",
            command=_sil,
            parser=parse_swift_sil,
            tools=("swiftc_bin",),
            notes=_sil_notes,
        ),
    ),
)
