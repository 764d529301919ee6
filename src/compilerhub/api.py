"""JSON API handlers, independent of any web framework.

Each handler takes plain values (a decoded JSON body, query parameters) and
returns an ApiResponse whose ``body()`` is the JSON document and whose
``status_code`` is the HTTP-equivalent status:

    compile(body)               POST /api/compile
    analyze(body)               POST /api/analyze
    visualization(job_id)       GET  /api/visualization?id=
    step(job_id, ...)           GET  /api/step?id=&step=&action=&to=
    errors(job_id)              GET  /api/errors?id=
    export(job_id, ...)         GET  /api/export?id=&artifact=&format=

Input problems map to 400, unknown jobs to 404 and orchestration faults to
500. A compilation that fails is still a 200 with ``success: false``.
"""

from __future__ import annotations

import base64
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from compilerhub import constants
from compilerhub._logging import get_logger
from compilerhub.exceptions import (
    CompilerHubError,
    InputValidationError,
    InvalidOptionError,
    NotFoundError,
)
from compilerhub.export import ast_of, export_artifact, export_bundle, tokens_of
from compilerhub.models import (
    ArtifactKind,
    CompileOptions,
    CompileResult,
    JobMode,
    JobStatus,
    OptimizationLevel,
    Severity,
)
from compilerhub.pipeline import Pipeline
from compilerhub.stepper import stage_summary, step_through

logger = get_logger(__name__)


class CompileRequest(BaseModel):
    """Body of /api/compile and /api/analyze."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    language: str = Field(min_length=1)
    code: str
    optimization: OptimizationLevel = OptimizationLevel.O0
    debug: bool = False
    cache: bool = True

    @property
    def options(self) -> CompileOptions:
        return CompileOptions(optimization=self.optimization, debug=self.debug)


class ApiResponse(BaseModel):
    """Handler outcome. status_code travels outside the JSON body."""

    success: bool
    data: dict[str, Any] | None = None
    execution_time: str = "0.00s"
    error: str | None = None
    status_code: int = 200

    def body(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "execution_time": self.execution_time}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out


class FileResponse(BaseModel):
    """Successful export: raw bytes plus download metadata."""

    filename: str
    media_type: str
    content: bytes
    status_code: int = 200

    def body(self) -> dict[str, Any]:
        """JSON-safe rendition (content base64-encoded)."""
        return {
            "success": True,
            "data": {
                "filename": self.filename,
                "media_type": self.media_type,
                "content_base64": base64.b64encode(self.content).decode("ascii"),
            },
        }


def _status_for(error: Exception) -> int:
    if isinstance(error, InputValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    return 500


def _diagnostic_rows(result: CompileResult) -> list[dict[str, Any]]:
    return [
        {"stage": record.stage_name, **d.model_dump(mode="json", exclude_none=True)}
        for record in result.records
        for d in record.diagnostics
    ]


def result_data(result: CompileResult) -> dict[str, Any]:
    """The ``data`` object of compile/analyze responses."""
    data: dict[str, Any] = {
        "job_id": result.job_id,
        "language": result.language,
        "status": result.status.value,
        "tokens": tokens_of(result),
        "ast": ast_of(result),
        "bytecode": result.artifact_payload(ArtifactKind.IR, ArtifactKind.BYTECODE, ArtifactKind.ASSEMBLY),
        "stages": [stage_summary(r) for r in result.records if r.ran],
        "diagnostics": _diagnostic_rows(result),
        "visualization": result.graph.model_dump(mode="json"),
    }
    execution = result.artifact_payload(ArtifactKind.EXECUTION)
    if execution is not None:
        data["execution"] = execution
    return data


class CompilerHubApi:
    """Handlers bound to one Pipeline."""

    def __init__(self, pipeline: Pipeline) -> None:
        self.pipeline = pipeline

    async def _guard(self, handler: Callable[[], Awaitable[ApiResponse]]) -> ApiResponse:
        started = time.perf_counter()
        try:
            response = await handler()
        except CompilerHubError as e:
            status = _status_for(e)
            if status == 500:
                logger.error(
                    "API request failed",
                    extra={"error_type": type(e).__name__, "context": e.context},
                    exc_info=True,
                )
            response = ApiResponse(success=False, error=e.message, status_code=status)
        except Exception as e:
            logger.error("Unexpected API error", extra={"error_type": type(e).__name__}, exc_info=True)
            response = ApiResponse(success=False, error=f"Internal error: {type(e).__name__}", status_code=500)
        elapsed = time.perf_counter() - started
        return response.model_copy(update={"execution_time": f"{elapsed:.2f}s"})

    @staticmethod
    def _request(body: Mapping[str, Any]) -> CompileRequest:
        try:
            return CompileRequest.model_validate(dict(body))
        except ValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first["loc"]) or "body"
            raise InvalidOptionError(f"Invalid request field {where}: {first['msg']}", context={"field": where}) from e

    async def _run(self, body: Mapping[str, Any], mode: JobMode) -> ApiResponse:
        request = self._request(body)
        result = await self.pipeline.run(
            request.language, request.code, request.options, mode=mode, use_cache=request.cache
        )
        succeeded = result.status == JobStatus.SUCCEEDED
        return ApiResponse(
            success=succeeded,
            data=result_data(result),
            error=None if succeeded else (result.error or f"Job {result.status.value}"),
        )

    async def compile(self, body: Mapping[str, Any]) -> ApiResponse:
        return await self._guard(lambda: self._run(body, JobMode.COMPILE))

    async def analyze(self, body: Mapping[str, Any]) -> ApiResponse:
        return await self._guard(lambda: self._run(body, JobMode.ANALYZE))

    async def visualization(self, job_id: str, stage: str | None = None) -> ApiResponse:
        """Stored graph; ``stage`` narrows it to one stage that ran (404 otherwise)."""

        async def handler() -> ApiResponse:
            graph = self.pipeline.visualization(job_id, stage)
            return ApiResponse(success=True, data=graph.model_dump(mode="json"))

        return await self._guard(handler)

    async def step(self, job_id: str, step: int = 0, action: str = "next", to: int | None = None) -> ApiResponse:
        async def handler() -> ApiResponse:
            view = step_through(self.pipeline.get_result(job_id), step, action, to)
            return ApiResponse(success=True, data=view.model_dump(mode="json"))

        return await self._guard(handler)

    async def errors(self, job_id: str) -> ApiResponse:
        async def handler() -> ApiResponse:
            result = self.pipeline.get_result(job_id)
            rows = _diagnostic_rows(result)
            errors = [r for r in rows if r["severity"] == Severity.ERROR.value]
            warnings = [r for r in rows if r["severity"] == Severity.WARNING.value]
            return ApiResponse(
                success=True,
                data={
                    "job_id": job_id,
                    "status": result.status.value,
                    "errors": errors,
                    "warnings": warnings,
                    "total_errors": len(errors),
                    "success": result.status == JobStatus.SUCCEEDED,
                },
            )

        return await self._guard(handler)

    async def export(self, job_id: str, artifact: str, fmt: str = "json") -> FileResponse | ApiResponse:
        """One artifact, or the zip bundle when artifact is ``all``."""
        try:
            result = self.pipeline.get_result(job_id)
            if artifact == "all":
                return FileResponse(
                    filename=f"compilerhub-{job_id}.zip",
                    media_type=constants.EXPORT_MEDIA_TYPES["zip"],
                    content=export_bundle(result),
                )
            filename, media_type, content = export_artifact(result, artifact, fmt)
        except CompilerHubError as e:
            return ApiResponse(success=False, error=e.message, status_code=_status_for(e))
        return FileResponse(filename=filename, media_type=media_type, content=content)
