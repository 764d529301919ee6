"""Pipeline manager: drives CompileJobs through their adapter's stages.

Each job runs in its own asyncio task. A semaphore bounds how many jobs run
at once; the rest stay Pending. Stages of a job run strictly in order, each
in a fresh sandbox, and files collected by a stage are handed to the next.

Failure policy:
- a failed blocking stage makes the job Failed, a failed non-blocking stage
  makes it PartiallyFailed; either way the remaining stages are not run
- a stage that runs out of time fails the job, blocking or not
- missing toolchain binaries fail stage 0 without starting a sandbox
- cancellation fails the current stage; earlier records are kept
- InternalFaultError aborts the job and propagates to the caller

Usage:
    async with Pipeline(PipelineConfig(max_concurrent_jobs=2)) as pipeline:
        result = await pipeline.run("brainfuck", "++++[>++++<-]>.")
        graph = pipeline.visualization(result.job_id)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Self

from compilerhub import constants
from compilerhub._logging import get_logger
from compilerhub.adapters import AdapterRegistry, LanguageAdapter, StageContext, StageSpec, default_registry
from compilerhub.cache import ResultCache
from compilerhub.config import PipelineConfig
from compilerhub.exceptions import (
    EmptySourceError,
    InternalFaultError,
    JobNotFoundError,
    SourceTooLargeError,
    ToolchainUnavailableError,
)
from compilerhub.graph import GraphBuilder, stage_view
from compilerhub.hash_utils import fingerprint
from compilerhub.models import (
    CompileJob,
    CompileOptions,
    CompileResult,
    Diagnostic,
    JobMode,
    JobStatus,
    Language,
    ResourceExceeded,
    SandboxLimits,
    Severity,
    StageRecord,
    StageStatus,
    VisualizationGraph,
    utcnow,
)
from compilerhub.sandbox import SandboxExecutor
from compilerhub.settings import Settings
from compilerhub.system_probes import probe_network_isolation

logger = get_logger(__name__)


def _error(message: str) -> Diagnostic:
    return Diagnostic(severity=Severity.ERROR, message=message)


def _interrupted_record(stage_name: str, started_at: datetime, message: str, *, timed_out: bool) -> StageRecord:
    return StageRecord(
        stage_name=stage_name,
        status=StageStatus.FAILED,
        started_at=started_at,
        finished_at=utcnow(),
        diagnostics=(_error(message),),
        resource_exceeded=ResourceExceeded(time=timed_out),
    )


class Pipeline:
    """Compilation orchestrator.

    Owns the job table, the result store and the sandbox. Safe to share
    between concurrent callers on one event loop.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        settings: Settings | None = None,
        registry: AdapterRegistry | None = None,
        sandbox: SandboxExecutor | None = None,
        cache: ResultCache | None = None,
        graph_builder: GraphBuilder | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.settings = settings or Settings()
        self.registry = registry or default_registry()
        self.sandbox = sandbox or SandboxExecutor(
            self.config.get_scratch_root(),
            require_network_isolation=self.config.require_network_isolation,
            require_filesystem_isolation=self.config.require_filesystem_isolation,
            unshare_bin=self.settings.unshare_bin,
            python_bin=self.settings.python_bin,
        )
        self.cache = cache or ResultCache(self.config.cache_max_entries)
        self._graph_builder = graph_builder or GraphBuilder()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self._jobs: dict[str, CompileJob] = {}
        self._tasks: dict[str, asyncio.Task[CompileResult]] = {}
        self._inflight: dict[str, str] = {}  # fingerprint -> job_id
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Pre-warm host probes so concurrent first jobs don't race on them."""
        if self._started:
            return
        isolated = await probe_network_isolation(self.settings.unshare_bin)
        self._started = True
        logger.info(
            "Pipeline started",
            extra={
                "languages": self.registry.languages(),
                "network_isolation": isolated,
                "max_concurrent_jobs": self.config.max_concurrent_jobs,
            },
        )

    async def stop(self) -> None:
        """Cancel running jobs and wait for them to settle."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._started = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def validate(self, language: str | Language, source_code: str) -> LanguageAdapter:
        """Reject bad input before any job exists.

        Raises:
            UnknownLanguageError: no adapter for language.
            EmptySourceError: source is empty or whitespace only.
            SourceTooLargeError: source exceeds max_code_size bytes.
        """
        name = language.value if isinstance(language, Language) else language
        adapter = self.registry.get(name)
        if not source_code.strip():
            raise EmptySourceError("Source code is empty", context={"language": name})
        size = len(source_code.encode("utf-8"))
        if size > self.config.max_code_size:
            raise SourceTooLargeError(
                f"Source code is {size} bytes, limit is {self.config.max_code_size}",
                context={"language": name, "size": size, "limit": self.config.max_code_size},
            )
        return adapter

    async def submit(
        self,
        language: str | Language,
        source_code: str,
        options: CompileOptions | None = None,
        *,
        mode: JobMode = JobMode.COMPILE,
        use_cache: bool = True,
    ) -> str:
        """Create a job (or reuse an identical one) and return its id.

        With caching enabled, a stored deterministic result or an identical
        job that is still running is returned instead of starting a new one.
        """
        adapter = self.validate(language, source_code)
        options = options or CompileOptions()
        fp = fingerprint(adapter.language, source_code, options, mode)
        reuse = use_cache and self.config.cache_enabled

        if reuse:
            if (running := self._inflight.get(fp)) is not None:
                logger.debug("Joined running job", extra={"job_id": running, "fingerprint": fp[:12]})
                return running
            if (hit := self.cache.lookup(fp)) is not None:
                logger.info("Cache hit", extra={"job_id": hit.job_id, "language": adapter.language})
                return hit.job_id

        job = CompileJob(
            language=adapter.language,
            source_code=source_code,
            options=options,
            stage_names=adapter.stage_names(mode),
            mode=mode,
            fingerprint=fp,
        )
        self._jobs[job.id] = job
        if reuse:
            self._inflight[fp] = job.id
        self.cache.reserve(fp, job.id)
        task = asyncio.create_task(self._execute(job, adapter), name=f"compilerhub-job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self._on_done(job_id, t))
        logger.info(
            "Job submitted",
            extra={"job_id": job.id, "language": job.language, "mode": mode.value, "stages": list(job.stage_names)},
        )
        return job.id

    def _on_done(self, job_id: str, task: asyncio.Task[CompileResult]) -> None:
        self._tasks.pop(job_id, None)
        job = self._jobs.pop(job_id, None)
        if job is not None and job.fingerprint is not None and self._inflight.get(job.fingerprint) == job_id:
            del self._inflight[job.fingerprint]
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.error("Job aborted", extra={"job_id": job_id, "error_type": type(exc).__name__}, exc_info=exc)

    async def wait(self, job_id: str) -> CompileResult:
        """Result of a job, waiting for it if it is still running.

        Raises:
            JobNotFoundError: unknown or evicted job id.
            InternalFaultError: the job aborted on an orchestration fault.
        """
        task = self._tasks.get(job_id)
        if task is not None:
            # A cancelled waiter must not cancel the job
            return await asyncio.shield(task)
        return self.cache.get_result(job_id)

    async def run(
        self,
        language: str | Language,
        source_code: str,
        options: CompileOptions | None = None,
        *,
        mode: JobMode = JobMode.COMPILE,
        use_cache: bool = True,
    ) -> CompileResult:
        """submit() and wait()."""
        job_id = await self.submit(language, source_code, options, mode=mode, use_cache=use_cache)
        return await self.wait(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; True if the job was still active.

        Raises:
            JobNotFoundError: job id was never seen (or already evicted).
        """
        job = self._jobs.get(job_id)
        task = self._tasks.get(job_id)
        if job is None or task is None or job.status.is_terminal:
            if job is None and job_id not in self.cache:
                raise JobNotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
            return False
        task.cancel()
        logger.info("Job cancellation requested", extra={"job_id": job_id, "status": job.status.value})
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_job(self, job_id: str) -> CompileJob:
        """Live job object of an active (pending or running) job."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} is not active", context={"job_id": job_id})
        return job

    def get_result(self, job_id: str) -> CompileResult:
        """Snapshot of an active job, or the stored result of a finished one."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job.snapshot()
        return self.cache.get_result(job_id)

    def visualization(self, job_id: str, stage: str | None = None) -> VisualizationGraph:
        """Stored graph of a job, or only the part one stage produced.

        Raises:
            JobNotFoundError: job id unknown or evicted.
            StageNotFoundError: stage did not run for this job.
        """
        return stage_view(self.cache.get(job_id), stage)

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(self, job: CompileJob, adapter: LanguageAdapter) -> CompileResult:
        try:
            try:
                async with self._semaphore:
                    job.transition(JobStatus.RUNNING)
                    logger.debug("Job started", extra={"job_id": job.id, "language": job.language})
                    await self._run_stages(job, adapter)
            except asyncio.CancelledError:
                # Cancelled while waiting for a slot: no stage started
                self._uncancel()
                if (first := job.next_stage) is not None:
                    job.append_record(
                        _interrupted_record(first, utcnow(), f"{first} cancelled before start", timed_out=False)
                    )
                job.cacheable = False
                self._finish(job, JobStatus.FAILED, "Job cancelled")
        except Exception as e:
            self.cache.release(job.id)
            fault = (
                e
                if isinstance(e, InternalFaultError)
                else InternalFaultError(
                    f"Job aborted: {type(e).__name__}: {e}",
                    context={"job_id": job.id, "language": job.language},
                )
            )
            if not job.status.is_terminal:
                job.error = fault.message
                job.transition(JobStatus.FAILED)
            if fault is e:
                raise
            raise fault from e

        job.graph = self._graph_builder.build(job.records)
        result = job.snapshot()
        self.cache.put(job.fingerprint, job.id, job.graph, result)
        logger.info(
            "Job finished",
            extra={
                "job_id": job.id,
                "status": job.status.value,
                "stages_run": list(job.graph.stages),
                "nodes": len(job.graph.nodes),
                "cacheable": job.cacheable,
            },
        )
        return result

    @staticmethod
    def _uncancel() -> None:
        task = asyncio.current_task()
        if task is not None:
            task.uncancel()

    def _finish(self, job: CompileJob, status: JobStatus, error: str | None = None) -> None:
        while (name := job.next_stage) is not None:
            job.append_record(StageRecord.not_run(name))
        job.error = error
        job.transition(status)

    def _stage_limits(self, remaining: float) -> SandboxLimits:
        limits = self.config.sandbox_limits()
        if remaining < limits.wall_seconds:
            return limits.model_copy(update={"wall_seconds": max(remaining, 0.001)})
        return limits

    async def _run_stages(self, job: CompileJob, adapter: LanguageAdapter) -> None:
        loop = asyncio.get_running_loop()
        specs = adapter.stages_for(job.mode)
        job_timeout = self.config.job_timeout_for(len(specs))
        deadline = loop.time() + job_timeout
        context = StageContext(
            job_id=job.id,
            language=job.language,
            source_code=job.source_code,
            source_name=adapter.file_name(job.source_code),
            options=job.options,
            settings=self.settings,
        )

        missing = adapter.missing_tools(self.settings, job.mode)
        if missing:
            err = ToolchainUnavailableError(
                f"Toolchain not available for {job.language}: {', '.join(missing)} not found",
                missing=missing,
                context={"job_id": job.id, "language": job.language},
            )
            logger.warning(err.message, extra=err.context)
            now = utcnow()
            job.append_record(
                StageRecord(
                    stage_name=specs[0].name,
                    status=StageStatus.FAILED,
                    started_at=now,
                    finished_at=now,
                    diagnostics=(_error(err.message),),
                )
            )
            job.cacheable = False
            self._finish(job, JobStatus.FAILED, err.message)
            return

        for spec in specs:
            started_at = utcnow()
            remaining = deadline - loop.time()
            if remaining <= 0:
                message = f"job timeout ({job_timeout:g}s) exceeded before stage {spec.name}"
                job.append_record(_interrupted_record(spec.name, started_at, message, timed_out=True))
                job.cacheable = False
                self._finish(job, JobStatus.FAILED, message)
                return
            try:
                record, collected = await self._run_stage(job, adapter, spec, context, remaining, started_at)
            except asyncio.CancelledError:
                self._uncancel()
                message = f"{spec.name} cancelled"
                job.append_record(_interrupted_record(spec.name, started_at, message, timed_out=False))
                job.cacheable = False
                self._finish(job, JobStatus.FAILED, "Job cancelled")
                logger.info("Job cancelled", extra={"job_id": job.id, "stage": spec.name})
                return
            except TimeoutError:
                message = f"{spec.name} exceeded its time budget and was abandoned"
                job.append_record(_interrupted_record(spec.name, started_at, message, timed_out=True))
                job.cacheable = False
                self._finish(job, JobStatus.FAILED, message)
                return

            if remaining < self.config.sandbox_limits().wall_seconds and record.resource_exceeded.time:
                record = record.with_diagnostics(_error(f"job timeout ({job_timeout:g}s) exceeded"))
            job.append_record(record)
            if record.resource_exceeded.any:
                job.cacheable = False

            if not record.success:
                status = (
                    JobStatus.FAILED
                    if spec.blocking or record.resource_exceeded.time
                    else JobStatus.PARTIALLY_FAILED
                )
                first = next((d.message for d in record.diagnostics if d.severity == Severity.ERROR), "")
                self._finish(job, status, f"{spec.name} failed: {first}" if first else f"{spec.name} failed")
                return
            context = context.with_artifacts(collected)

        self._finish(job, JobStatus.SUCCEEDED)

    async def _run_stage(
        self,
        job: CompileJob,
        adapter: LanguageAdapter,
        spec: StageSpec,
        context: StageContext,
        remaining: float,
        started_at: datetime,
    ) -> tuple[StageRecord, dict[str, bytes]]:
        limits = spec.limits(self._stage_limits(remaining))
        budget = min(self.config.stage_timeout_seconds, remaining) + constants.STAGE_TIMEOUT_GRACE_SECONDS
        command = spec.command(context)
        logger.debug("Stage started", extra={"job_id": job.id, "stage": spec.name, "command": command})
        async with asyncio.timeout(budget):
            result = await self.sandbox.execute(
                command,
                adapter.input_files(context),
                limits,
                collect=spec.collect,
                context_id=f"{job.id}:{spec.name}",
                env=spec.env(context) if spec.env is not None else None,
            )
        # Large dumps (clang JSON AST) take a while to fold; keep the loop free
        record = await asyncio.to_thread(
            adapter.parse_stage_output, spec.name, context, result, started_at=started_at
        )
        logger.debug(
            "Stage finished",
            extra={
                "job_id": job.id,
                "stage": spec.name,
                "status": record.status.value,
                "exit_code": result.exit_code,
                "wall_time_ms": result.wall_time_ms,
            },
        )
        return record, result.artifacts
