"""Step-through view over the stages of a finished job."""

from __future__ import annotations

from enum import Enum
from typing import Any, Final

from pydantic import BaseModel, ConfigDict

from compilerhub.exceptions import InvalidOptionError
from compilerhub.models import CompileResult, StageRecord


class StepAction(str, Enum):
    NEXT = "next"
    PREV = "prev"
    JUMP = "jump"


class StageExplanation(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    details: str


EXPLANATIONS: Final[dict[str, StageExplanation]] = {
    "lex": StageExplanation(
        title="Lexical Analysis",
        description="Breaking source code into tokens (keywords, identifiers, operators, literals).",
        details="The scanner reads characters and groups them into tokens according to the language grammar.",
    ),
    "parse": StageExplanation(
        title="Syntax Analysis",
        description="Parsing tokens into an Abstract Syntax Tree (AST).",
        details="The parser checks syntactic validity and builds a tree that mirrors the program structure.",
    ),
    "typecheck": StageExplanation(
        title="Semantic Analysis",
        description="Validating program meaning: types, scopes and declarations.",
        details="Type checking, name resolution and semantic rule verification; warnings are reported here.",
    ),
    "ir": StageExplanation(
        title="IR Generation",
        description="Lowering the AST to an intermediate representation.",
        details="A simple instruction set with explicit jumps; optional folding of repeated operations.",
    ),
    "codegen": StageExplanation(
        title="Code Generation",
        description="Generating lower-level code: LLVM IR, SIL, JVM bytecode or machine assembly.",
        details="Functions are split into blocks or instructions whose control flow forms the CFG.",
    ),
    "link": StageExplanation(
        title="Linking",
        description="Combining generated code with libraries into an executable.",
        details="Unresolved symbols (for example a missing main) are reported by the linker.",
    ),
    "execute": StageExplanation(
        title="Execution",
        description="Running the generated code in the sandbox.",
        details="Output and the final machine state are captured; a trace is recorded in debug mode.",
    ),
}

_FALLBACK = StageExplanation(
    title="Compilation Stage",
    description="A toolchain stage.",
    details="See the stage diagnostics and raw output for details.",
)


class StepView(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_step: int
    total_steps: int
    stage: dict[str, Any]
    explanation: StageExplanation


def stage_summary(record: StageRecord) -> dict[str, Any]:
    artifact = record.artifact
    return {
        "name": record.stage_name,
        "status": record.status.value,
        "exit_code": record.exit_code,
        "duration_ms": record.duration_ms,
        "diagnostics": [d.model_dump(mode="json", exclude_none=True) for d in record.diagnostics],
        "artifact_kind": artifact.kind.value if artifact is not None else None,
        "units": len(artifact.units) if artifact is not None else 0,
        "resource_exceeded": record.resource_exceeded.names,
        "truncated": record.truncated,
    }


def step_through(
    result: CompileResult,
    current: int = 0,
    action: StepAction | str = StepAction.NEXT,
    to: int | None = None,
) -> StepView:
    """Move from step ``current`` and describe the stage landed on.

    Steps are the stages that ran, in order. Positions are clamped to the
    valid range.

    Raises:
        InvalidOptionError: unknown action, or the job ran no stage.
    """
    try:
        action = StepAction(action)
    except ValueError:
        raise InvalidOptionError(
            f"Unknown step action {action!r} (expected next, prev or jump)", context={"action": str(action)}
        ) from None
    steps = [record for record in result.records if record.ran]
    if not steps:
        raise InvalidOptionError("Job has no stages to step through", context={"job_id": result.job_id})

    last = len(steps) - 1
    match action:
        case StepAction.NEXT:
            target = current + 1
        case StepAction.PREV:
            target = current - 1
        case StepAction.JUMP:
            target = current if to is None else to
    target = max(0, min(target, last))

    record = steps[target]
    return StepView(
        current_step=target,
        total_steps=len(steps),
        stage=stage_summary(record),
        explanation=EXPLANATIONS.get(record.stage_name, _FALLBACK),
    )
