"""Parsers for the Java stages.

- parse:     embedded outline parser (declarations, statements, calls)
- typecheck: javac diagnostics and the class files it wrote
- codegen:   ``javap -c -p`` bytecode listing
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Final

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import ArtifactKind, SandboxResult
from compilerhub.parsers.common import ParsedStage, UnitCollector, load_json, tree_collector
from compilerhub.parsers.diagnostics import parse_diagnostics
from compilerhub.parsers.listing import ListedFunction, ListedInstruction, instruction_graph

if TYPE_CHECKING:
    from compilerhub.adapters.base import StageContext


def parse_java_outline(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    document = load_json(result.stdout, "java outline")
    if not isinstance(document, dict) or not isinstance(document.get("ast"), dict):
        raise ParseFailureError("java outline: missing 'ast'")
    tree = document["ast"]
    return ParsedStage(artifact=tree_collector(tree).artifact(ArtifactKind.AST, payload=tree), diagnostics=diagnostics)


def class_files(artifacts: dict[str, bytes]) -> list[str]:
    return sorted(name for name in artifacts if name.endswith(".class"))


def parse_javac(context: StageContext, result: SandboxResult) -> ParsedStage:
    """javac diagnostics (line only); produced class files become units."""
    diagnostics = tuple(parse_diagnostics(result.stderr, source_names=(context.source_name,)))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    collector = UnitCollector("classes")
    names = class_files(result.artifacts)
    keys = {name: collector.add(label=name.removesuffix(".class").replace("/", "."), kind="class") for name in names}
    for name, key in keys.items():
        # Nested classes compile to Outer$Inner.class
        outer = name.removesuffix(".class").rsplit("$", 1)[0] + ".class"
        if outer != name and outer in keys:
            collector.relate(keys[outer], key, "nested")
    payload = {"classes": [{"file": n, "size": len(result.artifacts[n])} for n in names]}
    return ParsedStage(artifact=collector.artifact(ArtifactKind.NONE, payload=payload), diagnostics=diagnostics)


# public class Main {  /  final class Main$Inner implements java.lang.Runnable {
_CLASS = re.compile(r"^(?:[\w.$<>,\s]*\s)?(?:class|interface|enum|record)\s+(?P<name>[\w.$]+)")
#   public static void main(java.lang.String[]);
_METHOD = re.compile(r"^  (?P<decl>[^\s].*?\)?)(?: throws [\w.$, ]+)?;$")
#        5: invokevirtual #15                 // Method java/io/PrintStream.println:(Ljava/lang/String;)V
_INSTRUCTION = re.compile(r"^\s+(?P<offset>\d+): (?P<op>\w+)\s*(?P<args>.*)$")
_SWITCH_CASE = re.compile(r"^\s+(?:-?\d+|default): (?P<target>\d+)$")
_INVOKE_TARGET = re.compile(r"//\s*(?:Interface)?Method (?P<target>[\w/$.<>\"]+):")
_BRANCH_OPS: Final[frozenset[str]] = frozenset(
    {
        "goto", "goto_w", "jsr", "jsr_w", "ifeq", "ifne", "iflt", "ifge", "ifgt", "ifle", "if_icmpeq",
        "if_icmpne", "if_icmplt", "if_icmpge", "if_icmpgt", "if_icmple", "if_acmpeq", "if_acmpne",
        "ifnull", "ifnonnull",
    }
)  # fmt: skip
_TERMINATORS: Final[frozenset[str]] = frozenset(
    {"goto", "goto_w", "return", "ireturn", "lreturn", "freturn", "dreturn", "areturn", "athrow",
     "tableswitch", "lookupswitch"}
)  # fmt: skip


def _method_name(decl: str, owner: str) -> str:
    """``public static int add(int, int)`` -> ``Main.add(int, int)``."""
    head, _, params = decl.partition("(")
    name = head.split()[-1] if head.split() else head
    if name == owner or name.endswith("." + owner.rsplit(".", 1)[-1]):
        name = "<init>"
    if not params:
        # static {} initializer prints as "static {};"
        return f"{owner}.{name}"
    return f"{owner}.{name}({params.rstrip(')')})"


def parse_javap_listing(text: str) -> tuple[list[ListedFunction], dict[str, str]]:
    functions: list[ListedFunction] = []
    owners: dict[str, str] = {}
    owner: str | None = None
    current: ListedFunction | None = None
    in_switch: ListedInstruction | None = None
    for line in text.splitlines():
        if not line.startswith(" ") and (m := _CLASS.match(line)):
            owner = m["name"]
            owners[owner] = owner
            current = None
            continue
        if owner is None:
            continue
        if in_switch is not None:
            if m := _SWITCH_CASE.match(line):
                in_switch.jumps.append(int(m["target"]))
                continue
            if line.strip() == "}":
                in_switch = None
                continue
        if m := _METHOD.match(line):
            decl = m["decl"].strip()
            if "(" in decl or decl == "static {}":
                current = ListedFunction(name=_method_name(decl, owner), owner=owner)
                functions.append(current)
            else:
                current = None  # field declaration
            continue
        if current is None:
            continue
        if m := _INSTRUCTION.match(line):
            op, args = m["op"], m["args"].strip()
            ins = ListedInstruction(offset=int(m["offset"]), op=op, args=args)
            if op in _BRANCH_OPS and args.split() and args.split()[0].isdigit():
                ins.jumps.append(int(args.split()[0]))
            elif op.startswith("invoke") and (target := _INVOKE_TARGET.search(args)):
                ins.call = target["target"]
            elif op in ("tableswitch", "lookupswitch"):
                in_switch = ins
            current.instructions.append(ins)
    return functions, owners


def _resolve_calls(functions: list[ListedFunction]) -> None:
    """Map javap call comments to listed method names where unambiguous."""
    by_simple: dict[str, list[str]] = {}
    for fn in functions:
        owner = fn.owner or ""
        simple = fn.name.removeprefix(owner + ".").split("(", 1)[0]
        by_simple.setdefault(f"{owner}.{simple}", []).append(fn.name)
    for fn in functions:
        for ins in fn.instructions:
            if ins.call is None:
                continue
            target = ins.call.replace("/", ".").replace('"', "")
            if "." not in target and fn.owner:
                target = f"{fn.owner}.{target}"
            candidates = by_simple.get(target, [])
            ins.call = candidates[0] if len(candidates) == 1 else None


def parse_javap(context: StageContext, result: SandboxResult) -> ParsedStage:
    diagnostics = tuple(parse_diagnostics(result.stderr))
    if result.exit_code != 0:
        return ParsedStage(diagnostics=diagnostics, success=False)
    functions, owners = parse_javap_listing(result.stdout)
    if not owners:
        raise ParseFailureError("javap: no class found in listing")
    raw_calls = {id(ins): ins.call for fn in functions for ins in fn.instructions}
    _resolve_calls(functions)
    payload: dict[str, Any] = {
        "format": "jvm",
        "classes": sorted(owners),
        "methods": [
            {
                **fn.to_dict(),
                "invokes": [raw_calls[id(ins)] for ins in fn.instructions if raw_calls[id(ins)] is not None],
            }
            for fn in functions
        ],
    }
    artifact = instruction_graph(
        functions,
        prefix="bc",
        kind=ArtifactKind.BYTECODE,
        payload=payload,
        owners=owners,
        terminators=_TERMINATORS,
    )
    return ParsedStage(artifact=artifact, diagnostics=diagnostics)
