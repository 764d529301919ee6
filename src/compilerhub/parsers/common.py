"""Building blocks shared by the stage output parsers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from compilerhub.exceptions import ParseFailureError
from compilerhub.models import (
    EMPTY_ARTIFACT,
    ArtifactKind,
    Diagnostic,
    Relation,
    StageArtifact,
    Unit,
)


@dataclass(frozen=True)
class ParsedStage:
    """What a stage parser extracted from one SandboxResult.

    success=None lets the adapter decide from the exit code.
    """

    artifact: StageArtifact = EMPTY_ARTIFACT
    diagnostics: tuple[Diagnostic, ...] = ()
    success: bool | None = None


@dataclass
class UnitCollector:
    """Accumulates units and relations for one StageArtifact.

    Keys are positional (``<prefix>/<n>``) so identical output always yields
    identical keys.
    """

    prefix: str
    units: list[Unit] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)
    _keys: set[str] = field(default_factory=set, repr=False)

    def add(
        self,
        label: str,
        kind: str,
        line: int | None = None,
        column: int | None = None,
        key: str | None = None,
    ) -> str:
        key = key if key is not None else f"{self.prefix}/{len(self.units)}"
        if key in self._keys:
            # Overloads and re-declarations: keep keys unique within the stage
            key = f"{key}#{len(self.units)}"
        self._keys.add(key)
        self.units.append(Unit(key=key, label=label, kind=kind, line=line, column=column))
        return key

    def relate(self, source: str, target: str, kind: str) -> None:
        self.relations.append(Relation(source=source, target=target, kind=kind))

    def chain(self, keys: list[str], kind: str = "next") -> None:
        for a, b in zip(keys, keys[1:], strict=False):
            self.relate(a, b, kind)

    def artifact(self, kind: ArtifactKind, payload: Any = None) -> StageArtifact:
        known = {u.key for u in self.units}
        # A relation must never point outside its own stage
        relations = tuple(r for r in self.relations if r.source in known and r.target in known)
        return StageArtifact(kind=kind, units=tuple(self.units), relations=relations, payload=payload)


def load_json(text: str, what: str) -> Any:
    """json.loads that reports failures as ParseFailureError."""
    if not text.strip():
        raise ParseFailureError(f"{what}: empty output")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseFailureError(
            f"{what}: invalid JSON at line {e.lineno} column {e.colno}: {e.msg}",
            context={"what": what},
        ) from e


def positive(value: Any) -> int | None:
    """1-based position or None."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 1 else None


def tree_collector(tree: dict[str, Any], prefix: str = "ast") -> UnitCollector:
    """Units and child relations of a ``{type, value?, line, column, children}`` tree.

    The walk is iterative: deeply nested sources must not hit the recursion limit.
    """
    collector = UnitCollector(prefix)
    stack: list[tuple[dict[str, Any], str | None]] = [(tree, None)]
    while stack:
        node, parent = stack.pop()
        label = node["type"] if "value" not in node else f"{node['type']} {node['value']}"
        key = collector.add(
            label=label, kind=node["type"], line=positive(node.get("line")), column=positive(node.get("column"))
        )
        if parent is not None:
            collector.relate(parent, key, "child")
        stack.extend((child, key) for child in reversed(node.get("children", [])))
    return collector
