"""Graph builders for code listings.

Two granularities:

- block graphs (LLVM IR, SIL): function and basic-block units, ``contains``,
  ``branch`` and ``call`` relations
- instruction graphs (JVM bytecode, Go assembly): function and instruction
  units, ``contains``, ``next``, ``jump`` and ``call`` relations
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from compilerhub.models import ArtifactKind, StageArtifact
from compilerhub.parsers.common import UnitCollector

CONTROL_FLOW_KINDS = frozenset({"branch", "jump", "next"})
"""Relation kinds that describe control flow (used for CFG export)."""


def block_graph(
    functions: list[dict[str, Any]],
    *,
    prefix: str,
    kind: ArtifactKind,
    target_pattern: re.Pattern[str],
    call_pattern: re.Pattern[str],
    payload: Any,
) -> StageArtifact:
    """Artifact for ``[{name, blocks: [{label, instructions: [str]}]}]``.

    target_pattern must capture the referenced block in group ``label``;
    call_pattern the callee in group ``name``.
    """
    collector = UnitCollector(prefix)
    function_keys = {
        fn["name"]: collector.add(label=fn["name"], kind="function", key=f"{prefix}/fn/{fn['name']}")
        for fn in functions
    }
    for fn in functions:
        fn_key = function_keys[fn["name"]]
        block_keys = {
            b["label"]: collector.add(
                label=f"{fn['name']}:{b['label']}", kind="block", key=f"{prefix}/fn/{fn['name']}/bb/{b['label']}"
            )
            for b in fn["blocks"]
        }
        for b in fn["blocks"]:
            key = block_keys[b["label"]]
            collector.relate(fn_key, key, "contains")
            targets = dict.fromkeys(
                m["label"].strip('"') for ins in b["instructions"] for m in target_pattern.finditer(ins)
            )
            for target in targets:
                if target in block_keys:
                    collector.relate(key, block_keys[target], "branch")
            callees = dict.fromkeys(
                m["name"].strip('"') for ins in b["instructions"] for m in call_pattern.finditer(ins)
            )
            for callee in callees:
                if callee in function_keys:
                    collector.relate(key, function_keys[callee], "call")
    return collector.artifact(kind, payload=payload)


@dataclass
class ListedInstruction:
    offset: int
    op: str
    args: str = ""
    line: int | None = None
    jumps: list[int] = field(default_factory=list)
    call: str | None = None


@dataclass
class ListedFunction:
    name: str
    owner: str | None = None
    instructions: list[ListedInstruction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.owner is not None:
            out["owner"] = self.owner
        out["instructions"] = [
            {"offset": ins.offset, "op": ins.op, "args": ins.args, "line": ins.line} for ins in self.instructions
        ]
        return out


def instruction_graph(
    functions: list[ListedFunction],
    *,
    prefix: str,
    kind: ArtifactKind,
    payload: Any,
    owners: dict[str, str] | None = None,
    terminators: frozenset[str] = frozenset(),
) -> StageArtifact:
    """Artifact for instruction listings.

    ``owners`` maps owner names (classes) to their own unit labels; functions
    with an owner are attached to it with a ``contains`` relation.
    Instructions whose op is in terminators get no ``next`` edge.
    """
    collector = UnitCollector(prefix)
    owner_keys = {
        name: collector.add(label=label, kind="class", key=f"{prefix}/owner/{name}")
        for name, label in (owners or {}).items()
    }
    function_keys: dict[str, str] = {}
    for fn in functions:
        function_keys[fn.name] = collector.add(label=fn.name, kind="function", key=f"{prefix}/fn/{fn.name}")
        if fn.owner in owner_keys:
            collector.relate(owner_keys[fn.owner], function_keys[fn.name], "contains")

    for fn in functions:
        fn_key = function_keys[fn.name]
        by_offset: dict[int, str] = {}
        ordered: list[tuple[ListedInstruction, str]] = []
        for index, ins in enumerate(fn.instructions):
            label = f"{ins.op} {ins.args}".strip()
            key = collector.add(label=label, kind="instruction", line=ins.line, key=f"{prefix}/fn/{fn.name}/{index}")
            by_offset.setdefault(ins.offset, key)
            ordered.append((ins, key))
            collector.relate(fn_key, key, "contains")
        for (ins, key), (_, next_key) in zip(ordered, ordered[1:], strict=False):
            if ins.op not in terminators:
                collector.relate(key, next_key, "next")
        for ins, key in ordered:
            for target in ins.jumps:
                if target in by_offset:
                    collector.relate(key, by_offset[target], "jump")
            if ins.call is not None and ins.call in function_keys:
                collector.relate(key, function_keys[ins.call], "call")
    return collector.artifact(kind, payload=payload)
