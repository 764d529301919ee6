"""Brainfuck adapter: every stage is a phase of the embedded toolchain."""

from __future__ import annotations

from compilerhub.adapters.base import PYTHON_TOOL, LanguageAdapter, StageContext, StageSpec, info, python_module
from compilerhub.models import CompileOptions, Diagnostic, Language
from compilerhub.parsers.brainfuck import parse_bf_ast, parse_bf_execution, parse_bf_ir
from compilerhub.parsers.tokens import parse_token_json
from compilerhub.toolchains.brainfuck import IR_FILENAME

SOURCE_NAME = "main.bf"
_MODULE = "brainfuck"


def _ir(ctx: StageContext) -> list[str]:
    flag = "--optimize" if ctx.options.optimization.level > 0 else "--no-optimize"
    return python_module(ctx, _MODULE, "ir", flag, ctx.source_name)


def _execute(ctx: StageContext) -> list[str]:
    flag = "--trace" if ctx.options.debug else "--no-trace"
    return python_module(ctx, _MODULE, "execute", flag, IR_FILENAME)


def _ir_notes(options: CompileOptions) -> list[Diagnostic]:
    if options.optimization.level > 1:
        return [info(f"brainfuck has one optimization pass; {options.optimization.value} is treated as O1")]
    return []


BRAINFUCK_ADAPTER = LanguageAdapter(
    language=Language.BRAINFUCK.value,
    source_name=SOURCE_NAME,
    description="brainfuck via the embedded toolchain",
    stages=(
        StageSpec(
            name="lex",
            command=lambda ctx: python_module(ctx, _MODULE, "lex", ctx.source_name),
            parser=parse_token_json,
            analysis=True,
            tools=(PYTHON_TOOL,),
        ),
        StageSpec(
            name="parse",
            command=lambda ctx: python_module(ctx, _MODULE, "parse", ctx.source_name),
            parser=parse_bf_ast,
            analysis=True,
            tools=(PYTHON_TOOL,),
        ),
        StageSpec(
            name="ir",
            command=_ir,
            parser=parse_bf_ir,
            collect=(IR_FILENAME,),
            tools=(PYTHON_TOOL,),
            notes=_ir_notes,
        ),
        StageSpec(
            name="execute",
            command=_execute,
            parser=parse_bf_execution,
            blocking=False,
            tools=(PYTHON_TOOL,),
        ),
    ),
)
