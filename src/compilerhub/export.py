"""Export of job artifacts as downloadable files.

Single artifacts (tokens, ast, ir, asm, cfg, graph, source) in json, txt or dot,
and a zip bundle with everything plus a summary.json.
"""

from __future__ import annotations

import io
import json
import zipfile
from enum import Enum
from typing import Any, Final

from compilerhub import constants
from compilerhub.exceptions import InvalidOptionError
from compilerhub.models import ArtifactKind, CompileResult, StageRecord, utcnow
from compilerhub.parsers.listing import CONTROL_FLOW_KINDS


class ExportArtifact(str, Enum):
    TOKENS = "tokens"
    AST = "ast"
    IR = "ir"
    ASM = "asm"
    CFG = "cfg"
    GRAPH = "graph"
    SOURCE = "source"


class ExportFormat(str, Enum):
    JSON = "json"
    TXT = "txt"
    DOT = "dot"


SUPPORTED_FORMATS: Final[dict[ExportArtifact, frozenset[ExportFormat]]] = {
    ExportArtifact.TOKENS: frozenset({ExportFormat.JSON, ExportFormat.TXT}),
    ExportArtifact.AST: frozenset({ExportFormat.JSON, ExportFormat.TXT, ExportFormat.DOT}),
    ExportArtifact.IR: frozenset({ExportFormat.JSON, ExportFormat.TXT}),
    ExportArtifact.ASM: frozenset({ExportFormat.JSON, ExportFormat.TXT}),
    ExportArtifact.CFG: frozenset({ExportFormat.JSON, ExportFormat.TXT, ExportFormat.DOT}),
    ExportArtifact.GRAPH: frozenset({ExportFormat.JSON, ExportFormat.DOT}),
    ExportArtifact.SOURCE: frozenset({ExportFormat.TXT}),
}

SOURCE_EXTENSIONS: Final[dict[str, str]] = {
    "c": "c",
    "cpp": "cpp",
    "java": "java",
    "swift": "swift",
    "brainfuck": "bf",
    "go": "go",
}

_CODE_KINDS = (ArtifactKind.IR, ArtifactKind.BYTECODE, ArtifactKind.ASSEMBLY)
# Machine-level listings: native assembly or JVM bytecode
_ASM_KINDS = (ArtifactKind.ASSEMBLY, ArtifactKind.BYTECODE)
_CFG_UNIT_KINDS = frozenset({"block", "instruction"})


def _dumps(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _dot(name: str, nodes: list[tuple[str, str]], edges: list[tuple[str, str, str]], shape: str = "box") -> str:
    lines = [f"digraph {name} {{", f"  node [shape={shape}];"]
    lines.extend(f'  "{_dot_escape(node_id)}" [label="{_dot_escape(label)}"];' for node_id, label in nodes)
    lines.extend(
        f'  "{_dot_escape(src)}" -> "{_dot_escape(dst)}" [label="{_dot_escape(kind)}"];' for src, dst, kind in edges
    )
    lines.append("}")
    return "\n".join(lines) + "\n"


# =============================================================================
# Artifact extraction
# =============================================================================


def tokens_of(result: CompileResult) -> list[dict[str, Any]]:
    """Token list from the lex stage, or from the AST payload when the language has none."""
    tokens = result.artifact_payload(ArtifactKind.TOKENS)
    if tokens is None:
        ast = result.artifact_payload(ArtifactKind.AST)
        if isinstance(ast, dict):
            tokens = ast.get("tokens")
    return tokens if isinstance(tokens, list) else []


def ast_of(result: CompileResult) -> Any:
    payload = result.artifact_payload(ArtifactKind.AST)
    # Go payloads bundle the tree with its tokens and formatted source
    if isinstance(payload, dict) and "ast" in payload and "tokens" in payload:
        return payload["ast"]
    return payload


def cfg_of(result: CompileResult) -> dict[str, Any]:
    """Control-flow graph of the lowest-level code listing the job produced."""
    record = result.record_for(*_CODE_KINDS)
    if record is None or record.artifact is None:
        return {"stage": None, "nodes": [], "edges": []}
    units = [u for u in record.artifact.units if u.kind in _CFG_UNIT_KINDS]
    keys = {u.key for u in units}
    edges = [
        {"from": r.source, "to": r.target, "kind": r.kind}
        for r in record.artifact.relations
        if r.kind in CONTROL_FLOW_KINDS and r.source in keys and r.target in keys
    ]
    nodes = [{"id": u.key, "label": u.label, "kind": u.kind} for u in units]
    return {"stage": record.stage_name, "nodes": nodes, "edges": edges}


# =============================================================================
# Text renderers
# =============================================================================


def _tokens_text(tokens: list[dict[str, Any]]) -> str:
    return "".join(
        f"{str(t.get('type', '')):<15} {str(t.get('value', '')):<20} Line {t.get('line', '?')}\n" for t in tokens
    )


def _tree_text(record: StageRecord | None) -> str:
    if record is None or record.artifact is None:
        return ""
    artifact = record.artifact
    children: dict[str, list[str]] = {}
    has_parent: set[str] = set()
    for r in artifact.relations:
        if r.kind == "child":
            children.setdefault(r.source, []).append(r.target)
            has_parent.add(r.target)
    labels = {u.key: u for u in artifact.units}
    out: list[str] = []
    stack = [(u.key, 0) for u in reversed(artifact.units) if u.key not in has_parent]
    while stack:
        key, depth = stack.pop()
        unit = labels[key]
        where = f"  (line {unit.line})" if unit.line is not None else ""
        out.append(f"{'  ' * depth}{unit.label}{where}")
        stack.extend((child, depth + 1) for child in reversed(children.get(key, [])))
    return "\n".join(out) + ("\n" if out else "")


def _listing_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    out: list[str] = []
    for fn in payload.get("functions") or payload.get("methods") or []:
        out.append(f"{fn['name']}:")
        for block in fn.get("blocks", []):
            out.append(f"  {block['label']}:")
            out.extend(f"    {ins}" for ins in block["instructions"])
        for ins in fn.get("instructions", []):
            out.append(f"    {ins['offset']}: {ins['op']} {ins['args']}".rstrip())
    for index, ins in enumerate(payload.get("instructions", [])):
        arg = f" {ins['arg']}" if ins["op"] in ("ADD", "MOVE", "SET", "JZ", "JNZ") else ""
        out.append(f"{index:>5}: {ins['op']}{arg}")
    return "\n".join(out) + ("\n" if out else "")


def _cfg_text(cfg: dict[str, Any]) -> str:
    labels = {n["id"]: n["label"] for n in cfg["nodes"]}
    out = [f"{labels[e['from']]} -[{e['kind']}]-> {labels[e['to']]}" for e in cfg["edges"]]
    return "\n".join(out) + ("\n" if out else "")


# =============================================================================
# Public API
# =============================================================================


def _parse_request(artifact: ExportArtifact | str, fmt: ExportFormat | str) -> tuple[ExportArtifact, ExportFormat]:
    try:
        artifact = ExportArtifact(artifact)
        fmt = ExportFormat(fmt)
    except ValueError as e:
        raise InvalidOptionError(
            f"Unknown export artifact or format: {artifact!s}/{fmt!s}",
            context={"artifact": str(artifact), "format": str(fmt)},
        ) from e
    if fmt not in SUPPORTED_FORMATS[artifact]:
        supported = ", ".join(sorted(f.value for f in SUPPORTED_FORMATS[artifact]))
        raise InvalidOptionError(
            f"{artifact.value} cannot be exported as {fmt.value} (supported: {supported})",
            context={"artifact": artifact.value, "format": fmt.value},
        )
    return artifact, fmt


def export_artifact(
    result: CompileResult, artifact: ExportArtifact | str, fmt: ExportFormat | str = ExportFormat.JSON
) -> tuple[str, str, bytes]:
    """Render one artifact of a job.

    Returns:
        (filename, media_type, content)

    Raises:
        InvalidOptionError: unknown artifact/format or unsupported combination.
    """
    artifact, fmt = _parse_request(artifact, fmt)
    content: str
    match artifact, fmt:
        case ExportArtifact.TOKENS, ExportFormat.JSON:
            content = _dumps(tokens_of(result))
        case ExportArtifact.TOKENS, ExportFormat.TXT:
            content = _tokens_text(tokens_of(result))
        case ExportArtifact.AST, ExportFormat.JSON:
            content = _dumps(ast_of(result))
        case ExportArtifact.AST, ExportFormat.TXT:
            content = _tree_text(result.record_for(ArtifactKind.AST))
        case ExportArtifact.AST, ExportFormat.DOT:
            record = result.record_for(ArtifactKind.AST)
            units = record.artifact.units if record and record.artifact else ()
            relations = record.artifact.relations if record and record.artifact else ()
            content = _dot(
                "AST",
                [(u.key, u.label) for u in units],
                [(r.source, r.target, r.kind) for r in relations],
            )
        case ExportArtifact.IR, ExportFormat.JSON:
            content = _dumps(result.artifact_payload(*_CODE_KINDS))
        case ExportArtifact.IR, ExportFormat.TXT:
            content = _listing_text(result.artifact_payload(*_CODE_KINDS))
        case ExportArtifact.ASM, ExportFormat.JSON:
            content = _dumps(result.artifact_payload(*_ASM_KINDS))
        case ExportArtifact.ASM, ExportFormat.TXT:
            content = _listing_text(result.artifact_payload(*_ASM_KINDS))
        case ExportArtifact.CFG, ExportFormat.JSON:
            content = _dumps(cfg_of(result))
        case ExportArtifact.CFG, ExportFormat.TXT:
            content = _cfg_text(cfg_of(result))
        case ExportArtifact.CFG, ExportFormat.DOT:
            cfg = cfg_of(result)
            content = _dot(
                "CFG",
                [(n["id"], n["label"]) for n in cfg["nodes"]],
                [(e["from"], e["to"], e["kind"]) for e in cfg["edges"]],
            )
        case ExportArtifact.GRAPH, ExportFormat.JSON:
            content = _dumps(result.graph.model_dump(mode="json"))
        case ExportArtifact.GRAPH, ExportFormat.DOT:
            content = _dot(
                "Pipeline",
                [(n.id, f"{n.stage_name}: {n.label}") for n in result.graph.nodes],
                [(e.from_node_id, e.to_node_id, e.kind) for e in result.graph.edges],
                shape="ellipse",
            )
        case ExportArtifact.SOURCE, _:
            ext = SOURCE_EXTENSIONS.get(result.language, "txt")
            return f"source.{ext}", constants.EXPORT_MEDIA_TYPES["txt"], result.source_code.encode("utf-8")
    return f"{artifact.value}.{fmt.value}", constants.EXPORT_MEDIA_TYPES[fmt.value], content.encode("utf-8")


def export_bundle(result: CompileResult) -> bytes:
    """Zip with tokens/ast/ir JSON, IR and asm listings, cfg.dot, graph.json, the source and summary.json."""
    entries = [
        (ExportArtifact.TOKENS, ExportFormat.JSON),
        (ExportArtifact.AST, ExportFormat.JSON),
        (ExportArtifact.IR, ExportFormat.JSON),
        (ExportArtifact.IR, ExportFormat.TXT),
        (ExportArtifact.ASM, ExportFormat.TXT),
        (ExportArtifact.CFG, ExportFormat.DOT),
        (ExportArtifact.GRAPH, ExportFormat.JSON),
        (ExportArtifact.SOURCE, ExportFormat.TXT),
    ]
    ran = [r for r in result.records if r.ran]
    summary = {
        "job_id": result.job_id,
        "language": result.language,
        "status": result.status.value,
        "exported_at": utcnow().isoformat(),
        "stages": [{"name": r.stage_name, "status": r.status.value, "duration_ms": r.duration_ms} for r in ran],
        "total_duration_ms": sum(r.duration_ms for r in ran),
    }
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for artifact, fmt in entries:
            filename, _, content = export_artifact(result, artifact, fmt)
            zf.writestr(filename, content)
        zf.writestr("summary.json", _dumps(summary))
    return buffer.getvalue()
