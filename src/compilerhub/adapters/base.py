"""Language adapter capability.

A LanguageAdapter is plain data: an ordered tuple of StageSpecs plus the
source file name. Each StageSpec knows how to build its command, which
binaries it needs, what files to collect and how to parse the output.
Adapters for different languages are instances, not subclasses.
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING

from compilerhub._logging import get_logger
from compilerhub.exceptions import ParseFailureError, SandboxLimitExceededError
from compilerhub.models import (
    CompileOptions,
    Diagnostic,
    JobMode,
    SandboxLimits,
    SandboxResult,
    Severity,
    StageArtifact,
    StageRecord,
    StageStatus,
    utcnow,
)
from compilerhub.parsers.common import ParsedStage
from compilerhub.parsers.diagnostics import has_errors
from compilerhub.system_probes import missing_binaries

if TYPE_CHECKING:
    from compilerhub.settings import Settings

logger = get_logger(__name__)

PYTHON_TOOL = "python"
"""Pseudo tool name: the interpreter that runs embedded toolchains."""


def resolve_tool(settings: Settings, name: str) -> str:
    """Binary for a Settings field name (``clang_bin``) or PYTHON_TOOL."""
    if name == PYTHON_TOOL:
        return settings.python_bin or sys.executable
    return str(getattr(settings, name))


@dataclass(frozen=True)
class StageContext:
    """Everything a stage command builder or parser may look at."""

    job_id: str
    language: str
    source_code: str
    source_name: str
    options: CompileOptions
    settings: Settings
    artifacts: Mapping[str, bytes] = field(default_factory=dict)
    """Files collected by earlier stages of the same job."""

    def tool(self, name: str) -> str:
        return resolve_tool(self.settings, name)

    def with_artifacts(self, extra: Mapping[str, bytes]) -> StageContext:
        if not extra:
            return self
        return replace(self, artifacts={**self.artifacts, **extra})


CommandBuilder = Callable[[StageContext], list[str]]
StageParser = Callable[[StageContext, SandboxResult], ParsedStage]
OptionNotes = Callable[[CompileOptions], list[Diagnostic]]


def info(message: str) -> Diagnostic:
    return Diagnostic(severity=Severity.INFO, message=message)


@dataclass(frozen=True)
class StageSpec:
    """One stage of a language pipeline.

    Attributes:
        name: Stage name, unique within the adapter.
        command: Builds argv from the context.
        parser: Turns the SandboxResult into diagnostics and an artifact.
        blocking: A failure makes the job Failed (else PartiallyFailed).
        analysis: Part of the analyze (front-end only) mode.
        collect: Glob patterns of files to keep for later stages.
        tools: Settings fields (or PYTHON_TOOL) naming required binaries.
        notes: Info diagnostics for options this stage ignores or collapses.
        env: Extra environment for the command.
        min_output_bytes: Lower bound for the output cap (dumps that are
            only parseable when complete).
    """

    name: str
    command: CommandBuilder
    parser: StageParser
    blocking: bool = True
    analysis: bool = False
    collect: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    notes: OptionNotes | None = None
    env: Callable[[StageContext], dict[str, str]] | None = None
    min_output_bytes: int | None = None

    def limits(self, base: SandboxLimits) -> SandboxLimits:
        if self.min_output_bytes is None or base.max_output_bytes >= self.min_output_bytes:
            return base
        return base.model_copy(update={"max_output_bytes": self.min_output_bytes})


@dataclass(frozen=True)
class LanguageAdapter:
    """Stage sequence and output handling for one language."""

    language: str
    stages: tuple[StageSpec, ...]
    source_name: str | Callable[[str], str]
    description: str = ""

    def __post_init__(self) -> None:
        names = [s.name for s in self.stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names in {self.language} adapter: {names}")

    def file_name(self, source_code: str) -> str:
        return self.source_name(source_code) if callable(self.source_name) else self.source_name

    def stages_for(self, mode: JobMode = JobMode.COMPILE) -> tuple[StageSpec, ...]:
        if mode == JobMode.ANALYZE:
            return tuple(s for s in self.stages if s.analysis)
        return self.stages

    def stage_names(self, mode: JobMode = JobMode.COMPILE) -> tuple[str, ...]:
        return tuple(s.name for s in self.stages_for(mode))

    def stage(self, name: str) -> StageSpec:
        for spec in self.stages:
            if spec.name == name:
                return spec
        raise KeyError(f"{self.language} adapter has no stage {name!r}")

    def required_tools(self, settings: Settings, mode: JobMode = JobMode.COMPILE) -> list[str]:
        return list(dict.fromkeys(resolve_tool(settings, t) for s in self.stages_for(mode) for t in s.tools))

    def missing_tools(self, settings: Settings, mode: JobMode = JobMode.COMPILE) -> list[str]:
        return missing_binaries(self.required_tools(settings, mode))

    def input_files(self, context: StageContext) -> dict[str, bytes]:
        """Source file plus everything earlier stages collected."""
        return {**context.artifacts, context.source_name: context.source_code.encode("utf-8")}

    def build_command(self, stage_name: str, context: StageContext) -> list[str]:
        return self.stage(stage_name).command(context)

    def parse_stage_output(
        self,
        stage_name: str,
        context: StageContext,
        result: SandboxResult,
        *,
        started_at: datetime | None = None,
    ) -> StageRecord:
        """Turn a SandboxResult into a StageRecord. Never raises.

        Unparseable output, limit breaches and missing binaries all become a
        failed record with an error diagnostic.
        """
        spec = self.stage(stage_name)
        finished_at = utcnow()
        diagnostics: list[Diagnostic] = []
        artifact: StageArtifact | None = None
        success: bool

        if result.resource_exceeded.any:
            names = result.resource_exceeded.names
            err = SandboxLimitExceededError(
                f"{stage_name} terminated: {', '.join(names)} limit exceeded",
                limits=names,
                context={"job_id": context.job_id, "stage": stage_name},
            )
            diagnostics.append(Diagnostic(severity=Severity.ERROR, message=err.message))
            success = False
        elif result.exit_code == 127 and not result.stdout:
            diagnostics.append(
                Diagnostic(
                    severity=Severity.ERROR,
                    message=f"{stage_name}: toolchain command not found ({result.stderr})",
                )
            )
            success = False
        else:
            try:
                parsed = spec.parser(context, result)
            except ParseFailureError as e:
                logger.warning(
                    "Stage output could not be parsed",
                    extra={"job_id": context.job_id, "stage": stage_name, "error": e.message},
                )
                diagnostics.append(
                    Diagnostic(severity=Severity.ERROR, message=f"could not interpret {stage_name} output: {e.message}")
                )
                success = False
            except Exception as e:
                logger.error(
                    "Stage parser crashed",
                    extra={"job_id": context.job_id, "stage": stage_name, "error_type": type(e).__name__},
                    exc_info=True,
                )
                diagnostics.append(
                    Diagnostic(
                        severity=Severity.ERROR,
                        message=f"could not interpret {stage_name} output: {type(e).__name__}: {e}",
                    )
                )
                success = False
            else:
                diagnostics.extend(parsed.diagnostics)
                artifact = parsed.artifact
                success = parsed.success if parsed.success is not None else result.exit_code == 0

        if not success and not has_errors(diagnostics):
            detail = next((ln.strip() for ln in reversed(result.stderr.splitlines()) if ln.strip()), "")
            message = f"{stage_name} failed with exit code {result.exit_code}"
            diagnostics.append(
                Diagnostic(severity=Severity.ERROR, message=f"{message}: {detail}" if detail else message)
            )
        if result.truncated:
            diagnostics.append(
                Diagnostic(severity=Severity.WARNING, message=f"{stage_name} output truncated")
            )
        if spec.notes is not None:
            diagnostics.extend(spec.notes(context.options))

        return StageRecord(
            stage_name=stage_name,
            status=StageStatus.COMPLETED if success else StageStatus.FAILED,
            started_at=started_at or finished_at,
            finished_at=finished_at,
            raw_output=result.stdout,
            raw_error=result.stderr,
            exit_code=result.exit_code,
            diagnostics=tuple(diagnostics),
            resource_exceeded=result.resource_exceeded,
            truncated=result.truncated,
            artifact=artifact,
        )


def python_module(context: StageContext, module: str, *args: str) -> list[str]:
    """argv running an embedded toolchain module."""
    return [context.tool(PYTHON_TOOL), "-m", f"compilerhub.toolchains.{module}", *args]
