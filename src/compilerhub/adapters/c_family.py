"""C and C++ adapters (clang / clang++).

Stages: lex (raw token dump), parse (JSON AST), typecheck (-fsyntax-only
with warnings), codegen (LLVM IR, honours -O and -g) and link (non-blocking:
a program without ``main`` still produces IR).
"""

from __future__ import annotations

from compilerhub.adapters.base import LanguageAdapter, StageContext, StageSpec
from compilerhub.models import Language
from compilerhub.parsers.clang import parse_clang_ast
from compilerhub.parsers.diagnostics import diagnostics_stage
from compilerhub.parsers.llvm_ir import LL_FILENAME, parse_llvm_codegen
from compilerhub.parsers.tokens import parse_clang_tokens

# Full AST dumps include every declaration pulled in from system headers
AST_DUMP_MIN_OUTPUT_BYTES = 64 * 1024 * 1024


def _c_family(language: Language, compiler: str, source_name: str, std: str) -> LanguageAdapter:
    def driver(ctx: StageContext) -> list[str]:
        return [ctx.tool(compiler), f"-std={std}", "-fno-color-diagnostics"]

    def codegen(ctx: StageContext) -> list[str]:
        argv = [*driver(ctx), "-S", "-emit-llvm", f"-O{ctx.options.optimization.level}"]
        if ctx.options.debug:
            argv.append("-g")
        return [*argv, "-o", LL_FILENAME, ctx.source_name]

    def link(ctx: StageContext) -> list[str]:
        return [ctx.tool(compiler), "-fno-color-diagnostics", LL_FILENAME, "-o", "main.out"]

    tools = (compiler,)
    return LanguageAdapter(
        language=language.value,
        source_name=source_name,
        description=f"{language.value} via {compiler.removesuffix('_bin')}",
        stages=(
            StageSpec(
                name="lex",
                command=lambda ctx: [*driver(ctx), "-fsyntax-only", "-Xclang", "-dump-raw-tokens", ctx.source_name],
                parser=parse_clang_tokens,
                analysis=True,
                tools=tools,
            ),
            StageSpec(
                name="parse",
                command=lambda ctx: [*driver(ctx), "-fsyntax-only", "-Xclang", "-ast-dump=json", ctx.source_name],
                parser=parse_clang_ast,
                analysis=True,
                tools=tools,
                min_output_bytes=AST_DUMP_MIN_OUTPUT_BYTES,
            ),
            StageSpec(
                name="typecheck",
                command=lambda ctx: [*driver(ctx), "-fsyntax-only", "-Wall", "-Wextra", ctx.source_name],
                parser=diagnostics_stage,
                tools=tools,
            ),
            StageSpec(
                name="codegen",
                command=codegen,
                parser=parse_llvm_codegen,
                collect=(LL_FILENAME,),
                tools=tools,
            ),
            StageSpec(
                name="link",
                command=link,
                parser=diagnostics_stage,
                blocking=False,
                tools=tools,
            ),
        ),
    )


C_ADAPTER = _c_family(Language.C, "clang_bin", "main.c", "c17")
CPP_ADAPTER = _c_family(Language.CPP, "clangxx_bin", "main.cpp", "c++17")
