"""compilerhub: run source code through real toolchains, stage by stage.

Each supported language is a sequence of stages (lex, parse, typecheck, ir,
codegen, link, execute). Every stage runs in a resource-limited sandbox, its
raw output is parsed into a typed artifact, and the artifacts of a job are
linked into one cross-stage graph.

Quick Start:
    ```python
    import asyncio
    from compilerhub import CompileOptions, Pipeline

    async def main():
        async with Pipeline() as pipeline:
            result = await pipeline.run("brainfuck", "++++++++[>++++++++<-]>+.", CompileOptions())
            print(result.status, [r.stage_name for r in result.records])

    asyncio.run(main())
    ```

Framework-agnostic JSON handlers live in ``compilerhub.api.CompilerHubApi``;
the ``chub`` command wraps the same pipeline for the terminal.
"""

from importlib.metadata import PackageNotFoundError, version

from compilerhub._logging import configure_logging
from compilerhub.api import ApiResponse, CompileRequest, CompilerHubApi, FileResponse
from compilerhub.cache import CacheStats, ResultCache
from compilerhub.config import PipelineConfig
from compilerhub.exceptions import (
    CacheCorruptionError,
    CompilerHubError,
    EmptySourceError,
    InputValidationError,
    InternalFaultError,
    InvalidOptionError,
    JobNotFoundError,
    NotFoundError,
    ParseFailureError,
    SandboxLimitExceededError,
    SourceTooLargeError,
    ToolchainUnavailableError,
    UnknownLanguageError,
)
from compilerhub.export import export_artifact, export_bundle
from compilerhub.graph import GraphBuilder, build_graph
from compilerhub.models import (
    CompileJob,
    CompileOptions,
    CompileResult,
    Diagnostic,
    JobMode,
    JobStatus,
    OptimizationLevel,
    Severity,
    StageRecord,
    StageStatus,
    VisualizationGraph,
)
from compilerhub.pipeline import Pipeline
from compilerhub.settings import Settings
from compilerhub.stepper import StepView, step_through

__all__ = [
    "ApiResponse",
    "CacheCorruptionError",
    "CacheStats",
    "CompileJob",
    "CompileOptions",
    "CompileRequest",
    "CompileResult",
    "CompilerHubApi",
    "CompilerHubError",
    "Diagnostic",
    "EmptySourceError",
    "FileResponse",
    "GraphBuilder",
    "InputValidationError",
    "InternalFaultError",
    "InvalidOptionError",
    "JobMode",
    "JobNotFoundError",
    "JobStatus",
    "NotFoundError",
    "OptimizationLevel",
    "ParseFailureError",
    "Pipeline",
    "PipelineConfig",
    "ResultCache",
    "SandboxLimitExceededError",
    "Settings",
    "Severity",
    "SourceTooLargeError",
    "StageRecord",
    "StageStatus",
    "StepView",
    "ToolchainUnavailableError",
    "UnknownLanguageError",
    "VisualizationGraph",
    "build_graph",
    "configure_logging",
    "export_artifact",
    "export_bundle",
    "step_through",
]

try:
    __version__ = version("compilerhub")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
