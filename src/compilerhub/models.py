"""Data models for compilerhub."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Final
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from compilerhub.exceptions import IllegalTransitionError


class Language(str, Enum):
    """Supported source languages."""

    JAVA = "java"
    CPP = "cpp"
    C = "c"
    SWIFT = "swift"
    BRAINFUCK = "brainfuck"
    GO = "go"


class OptimizationLevel(str, Enum):
    """Optimization hint passed to adapters."""

    O0 = "O0"
    O1 = "O1"
    O2 = "O2"
    O3 = "O3"

    @property
    def level(self) -> int:
        return int(self.value[1])


class JobMode(str, Enum):
    """compile runs every stage, analyze only the front-end (lex/parse) stages."""

    COMPILE = "compile"
    ANALYZE = "analyze"


class JobStatus(str, Enum):
    """CompileJob lifecycle state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.PARTIALLY_FAILED)


class StageStatus(str, Enum):
    """Outcome of one stage."""

    COMPLETED = "completed"
    FAILED = "failed"
    NOT_RUN = "not_run"


class Severity(str, Enum):
    """Diagnostic severity."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    NOTE = "note"


class ArtifactKind(str, Enum):
    """Shape of the structural output of a stage."""

    TOKENS = "tokens"
    AST = "ast"
    IR = "ir"
    BYTECODE = "bytecode"
    ASSEMBLY = "assembly"
    EXECUTION = "execution"
    NONE = "none"


_FROZEN = ConfigDict(frozen=True, extra="forbid")


class CompileOptions(BaseModel):
    """Per-job toolchain hints. Adapters may ignore what their toolchain lacks."""

    model_config = _FROZEN

    optimization: OptimizationLevel = OptimizationLevel.O0
    debug: bool = False


class Diagnostic(BaseModel):
    """A message reported by a toolchain or by the pipeline itself.

    line/column are 1-based and only present when the tool reported them.
    """

    model_config = _FROZEN

    severity: Severity
    message: str
    line: int | None = Field(default=None, ge=1)
    column: int | None = Field(default=None, ge=1)


class Unit(BaseModel):
    """One distinguishable syntactic/semantic unit surfaced by a stage.

    key is unique within its stage and stable across re-parses of identical output
    (positional path such as ``ast/0/2`` or ``tok/17``).
    """

    model_config = _FROZEN

    key: str
    label: str
    kind: str
    line: int | None = None
    column: int | None = None


class Relation(BaseModel):
    """A structural relation between two units of the same stage."""

    model_config = _FROZEN

    source: str
    target: str
    kind: str


class StageArtifact(BaseModel):
    """Structural output of a stage plus its language-specific raw payload."""

    model_config = _FROZEN

    kind: ArtifactKind = ArtifactKind.NONE
    units: tuple[Unit, ...] = ()
    relations: tuple[Relation, ...] = ()
    payload: Any = None


EMPTY_ARTIFACT: Final[StageArtifact] = StageArtifact()


class ResourceExceeded(BaseModel):
    """Which sandbox limits forced termination."""

    model_config = _FROZEN

    cpu: bool = False
    memory: bool = False
    time: bool = False

    @property
    def any(self) -> bool:
        return self.cpu or self.memory or self.time

    @property
    def names(self) -> list[str]:
        return [name for name in ("cpu", "memory", "time") if getattr(self, name)]


class SandboxLimits(BaseModel):
    """Limits applied to a single sandboxed command."""

    model_config = _FROZEN

    cpu_seconds: float = Field(gt=0)
    memory_bytes: int = Field(gt=0)
    wall_seconds: float = Field(gt=0)
    max_output_bytes: int = Field(gt=0)


class SandboxResult(BaseModel):
    """Raw outcome of one sandboxed command. Ephemeral: parsed into a StageRecord."""

    exit_code: int | None = Field(description="Exit code, negative signal number if killed, None if never reaped")
    stdout: str = ""
    stderr: str = ""
    wall_time_ms: int = 0
    cpu_time_ms: int | None = None
    peak_memory_bytes: int | None = None
    resource_exceeded: ResourceExceeded = Field(default_factory=ResourceExceeded)
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    artifact_paths: list[str] = Field(default_factory=list, description="Collected files, relative to the scratch dir")
    artifacts: dict[str, bytes] = Field(default_factory=dict, description="Contents of collected files")

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated


def utcnow() -> datetime:
    return datetime.now(UTC)


class StageRecord(BaseModel):
    """Immutable record of one stage of one CompileJob."""

    model_config = _FROZEN

    stage_name: str
    status: StageStatus
    started_at: datetime
    finished_at: datetime
    raw_output: str = ""
    raw_error: str = ""
    exit_code: int | None = None
    diagnostics: tuple[Diagnostic, ...] = ()
    resource_exceeded: ResourceExceeded = Field(default_factory=ResourceExceeded)
    truncated: bool = False
    artifact: StageArtifact | None = None

    @property
    def success(self) -> bool:
        return self.status == StageStatus.COMPLETED

    @property
    def ran(self) -> bool:
        return self.status != StageStatus.NOT_RUN

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @classmethod
    def not_run(cls, stage_name: str) -> StageRecord:
        now = utcnow()
        return cls(stage_name=stage_name, status=StageStatus.NOT_RUN, started_at=now, finished_at=now)

    def with_diagnostics(self, *extra: Diagnostic, failed: bool = False) -> StageRecord:
        """Copy of this record with diagnostics appended (optionally marked failed)."""
        update: dict[str, Any] = {"diagnostics": (*self.diagnostics, *extra)}
        if failed:
            update["status"] = StageStatus.FAILED
        return self.model_copy(update=update)


class GraphNode(BaseModel):
    model_config = _FROZEN

    id: str
    stage_name: str
    label: str
    kind: str


class GraphEdge(BaseModel):
    model_config = _FROZEN

    from_node_id: str
    to_node_id: str
    kind: str


class VisualizationGraph(BaseModel):
    """Language-neutral nodes/edges/stages projection of a job's StageRecords."""

    model_config = _FROZEN

    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()
    stages: tuple[str, ...] = ()

    def node_signature(self) -> list[tuple[str, str, str]]:
        """Sorted (stage_name, label, kind) tuples; equal for isomorphic graphs."""
        return sorted((n.stage_name, n.label, n.kind) for n in self.nodes)

    def edge_signature(self) -> list[tuple[tuple[str, str, str], tuple[str, str, str], str]]:
        """Sorted edges expressed through node content instead of node ids."""
        by_id = {n.id: (n.stage_name, n.label, n.kind) for n in self.nodes}
        return sorted((by_id[e.from_node_id], by_id[e.to_node_id], e.kind) for e in self.edges)


class CompileResult(BaseModel):
    """Snapshot of a finished CompileJob as held by the result store."""

    model_config = _FROZEN

    job_id: str
    language: str
    mode: JobMode
    status: JobStatus
    options: CompileOptions
    source_code: str
    records: tuple[StageRecord, ...]
    graph: VisualizationGraph
    error: str | None = None
    fingerprint: str | None = None
    cacheable: bool = True
    created_at: datetime
    finished_at: datetime | None = None

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return [d for record in self.records for d in record.diagnostics]

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    def artifact_payload(self, *kinds: ArtifactKind) -> Any:
        """Payload of the last ran stage whose artifact kind is in kinds (None if absent)."""
        for record in reversed(self.records):
            if record.ran and record.artifact is not None and record.artifact.kind in kinds:
                return record.artifact.payload
        return None

    def record_for(self, *kinds: ArtifactKind) -> StageRecord | None:
        for record in reversed(self.records):
            if record.ran and record.artifact is not None and record.artifact.kind in kinds:
                return record
        return None


_TRANSITIONS: Final[dict[JobStatus, frozenset[JobStatus]]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.PARTIALLY_FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.PARTIALLY_FAILED: frozenset(),
}


@dataclass
class CompileJob:
    """A single compilation request, owned by the Pipeline for its lifetime.

    Status transitions are monotonic (see _TRANSITIONS). Records are append-only
    and must follow stage_names in order.
    """

    language: str
    source_code: str
    options: CompileOptions
    stage_names: tuple[str, ...]
    mode: JobMode = JobMode.COMPILE
    fingerprint: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    records: list[StageRecord] = field(default_factory=list)
    graph: VisualizationGraph | None = None
    error: str | None = None
    cacheable: bool = True

    def transition(self, to: JobStatus) -> None:
        if to not in _TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"Illegal job transition {self.status.value} -> {to.value}",
                context={"job_id": self.id, "from": self.status.value, "to": to.value},
            )
        self.status = to
        if to == JobStatus.RUNNING:
            self.started_at = utcnow()
        elif to.is_terminal:
            self.finished_at = utcnow()

    def append_record(self, record: StageRecord) -> None:
        if self.status.is_terminal:
            raise IllegalTransitionError(
                "Cannot append a stage record to a finished job",
                context={"job_id": self.id, "stage": record.stage_name},
            )
        index = len(self.records)
        if index >= len(self.stage_names) or self.stage_names[index] != record.stage_name:
            expected = self.stage_names[index] if index < len(self.stage_names) else None
            raise IllegalTransitionError(
                f"Out-of-order stage record {record.stage_name!r}, expected {expected!r}",
                context={"job_id": self.id, "stage": record.stage_name, "expected": expected},
            )
        self.records.append(record)

    @property
    def next_stage(self) -> str | None:
        index = len(self.records)
        return self.stage_names[index] if index < len(self.stage_names) else None

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return [d for record in self.records for d in record.diagnostics]

    def snapshot(self) -> CompileResult:
        return CompileResult(
            job_id=self.id,
            language=self.language,
            mode=self.mode,
            status=self.status,
            options=self.options,
            source_code=self.source_code,
            records=tuple(self.records),
            graph=self.graph or VisualizationGraph(),
            error=self.error,
            fingerprint=self.fingerprint,
            cacheable=self.cacheable,
            created_at=self.created_at,
            finished_at=self.finished_at,
        )
