"""Java adapter (embedded lexer and outline parser, javac, javap).

javac writes class files into the scratch dir; they are collected and handed
to the codegen stage, which disassembles them with ``javap -c -p``.
"""

from __future__ import annotations

import re

from compilerhub.adapters.base import PYTHON_TOOL, LanguageAdapter, StageContext, StageSpec, info, python_module
from compilerhub.models import CompileOptions, Diagnostic, Language
from compilerhub.parsers.jvm import class_files, parse_java_outline, parse_javac, parse_javap
from compilerhub.parsers.tokens import parse_token_json

DEFAULT_SOURCE_NAME = "Main.java"

# javac requires a public top-level type to live in <Name>.java
_PUBLIC_TYPE = re.compile(
    r"^\s*public\s+(?:(?:final|abstract|sealed|non-sealed|strictfp)\s+)*"
    r"(?:class|interface|enum|record)\s+(?P<name>[A-Za-z_$][\w$]*)",
    re.MULTILINE,
)


def java_source_name(source_code: str) -> str:
    m = _PUBLIC_TYPE.search(source_code)
    return f"{m['name']}.java" if m else DEFAULT_SOURCE_NAME


def _javac(ctx: StageContext) -> list[str]:
    debug_flag = "-g" if ctx.options.debug else "-g:none"
    return [ctx.tool("javac_bin"), "-Xlint:all", debug_flag, "-d", ".", ctx.source_name]


def _javap(ctx: StageContext) -> list[str]:
    return [ctx.tool("javap_bin"), "-c", "-p", *class_files(dict(ctx.artifacts))]


def _javac_notes(options: CompileOptions) -> list[Diagnostic]:
    if options.optimization.level > 0:
        return [info(f"javac does not optimize bytecode; {options.optimization.value} is ignored")]
    return []


JAVA_ADAPTER = LanguageAdapter(
    language=Language.JAVA.value,
    source_name=java_source_name,
    description="java via javac and javap",
    stages=(
        StageSpec(
            name="lex",
            command=lambda ctx: python_module(ctx, "lexer", "-l", "java", ctx.source_name),
            parser=parse_token_json,
            analysis=True,
            tools=(PYTHON_TOOL,),
        ),
        StageSpec(
            name="parse",
            command=lambda ctx: python_module(ctx, "javaparse", ctx.source_name),
            parser=parse_java_outline,
            analysis=True,
            tools=(PYTHON_TOOL,),
        ),
        StageSpec(
            name="typecheck",
            command=_javac,
            parser=parse_javac,
            collect=("**/*.class",),
            tools=("javac_bin",),
            notes=_javac_notes,
        ),
        StageSpec(
            name="codegen",
            command=_javap,
            parser=parse_javap,
            tools=("javap_bin",),
        ),
    ),
)
