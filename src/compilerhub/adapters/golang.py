"""Go adapter (gofmt + go toolchain).

parse runs ``gofmt -e`` (syntax errors with positions, canonical source on
stdout). typecheck is ``go vet``, which type-checks before analysing, so its
findings are reported as errors. codegen compiles with ``-gcflags=-S`` and
reads the assembly listing the compiler prints.

The build cache lives under $HOME, which the sandbox points at the stage's
scratch dir, so every stage starts cold and compiles the standard library
packages it imports. Go jobs need more generous cpu/wall limits than C.
"""

from __future__ import annotations

from compilerhub.adapters.base import LanguageAdapter, StageContext, StageSpec, info
from compilerhub.models import CompileOptions, Diagnostic, Language
from compilerhub.parsers.diagnostics import diagnostics_stage
from compilerhub.parsers.golang import parse_gofmt, parse_go_build

SOURCE_NAME = "main.go"


def _go_env(_ctx: StageContext) -> dict[str, str]:
    # No toolchain downloads, no cgo (no C compiler inside the sandbox)
    return {"GOTOOLCHAIN": "local", "CGO_ENABLED": "0"}


def _codegen(ctx: StageContext) -> list[str]:
    gcflags = "-S -N -l" if ctx.options.optimization.level == 0 else "-S"
    return [ctx.tool("go_bin"), "build", f"-gcflags={gcflags}", "-o", "/dev/null", ctx.source_name]


def _codegen_notes(options: CompileOptions) -> list[Diagnostic]:
    notes = []
    if options.optimization.level > 1:
        notes.append(info(f"go has a single optimization level; {options.optimization.value} is treated as O1"))
    if options.debug:
        notes.append(info("go always emits DWARF debug info; debug has no further effect"))
    return notes


GO_ADAPTER = LanguageAdapter(
    language=Language.GO.value,
    source_name=SOURCE_NAME,
    description="go via gofmt, go vet and go build",
    stages=(
        StageSpec(
            name="parse",
            command=lambda ctx: [ctx.tool("gofmt_bin"), "-e", ctx.source_name],
            parser=parse_gofmt,
            analysis=True,
            tools=("gofmt_bin",),
        ),
        StageSpec(
            name="typecheck",
            command=lambda ctx: [ctx.tool("go_bin"), "vet", ctx.source_name],
            parser=diagnostics_stage,
            tools=("go_bin",),
            env=_go_env,
        ),
        StageSpec(
            name="codegen",
            command=_codegen,
            parser=parse_go_build,
            tools=("go_bin",),
            notes=_codegen_notes,
            env=_go_env,
        ),
    ),
)
