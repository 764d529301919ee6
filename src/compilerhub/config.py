"""Pipeline configuration for compilerhub.

PipelineConfig holds every policy value the pipeline needs: sandbox limits,
stage and job timeouts, cache sizing, concurrency and isolation requirements.

Example:
    ```python
    from compilerhub import Pipeline, PipelineConfig

    config = PipelineConfig(
        wall_seconds=5,
        cache_max_entries=64,
        max_concurrent_jobs=4,
    )
    async with Pipeline(config) as pipeline:
        result = await pipeline.run(language="go", source_code="package main\\nfunc main(){}")
    ```
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from compilerhub import constants
from compilerhub.models import SandboxLimits


class PipelineConfig(BaseModel):
    """Configuration for Pipeline.

    All fields have defaults suitable for local development.

    Attributes:
        cpu_seconds: CPU time limit per sandboxed stage command.
        memory_mb: Resident memory limit (process tree) per stage command.
        wall_seconds: Wall-clock limit per stage command. Capped by
            stage_timeout_seconds.
        max_output_bytes: Cap for each of stdout/stderr; longer output is
            truncated and flagged.
        stage_timeout_seconds: Per-stage ceiling enforced by the pipeline.
        job_timeout_seconds: Whole-job ceiling. None means the sum of the
            stage timeouts of the job's stages.
        cache_enabled: Allow identical submissions to reuse a stored result.
            Requests can still opt out individually.
        cache_max_entries: Result store capacity (LRU eviction).
        max_concurrent_jobs: Jobs running at once; later jobs stay pending.
        scratch_root: Parent of the per-command scratch directories.
            None uses the system temp dir.
        require_network_isolation: Refuse to run stages when a network
            namespace cannot be created, instead of only logging a warning.
        require_filesystem_isolation: Refuse to run stages when commands
            cannot be confined to a read-only host filesystem with a writable
            scratch dir, instead of only logging a warning.
        max_code_size: Largest accepted source, in bytes.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Sandbox limits
    cpu_seconds: float = Field(default=constants.DEFAULT_CPU_SECONDS, gt=0, le=600)
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=constants.MIN_MEMORY_MB)
    wall_seconds: float = Field(default=constants.DEFAULT_WALL_SECONDS, gt=0, le=600)
    max_output_bytes: int = Field(default=constants.DEFAULT_MAX_OUTPUT_BYTES, ge=1024)

    # Timeouts
    stage_timeout_seconds: float = Field(default=constants.DEFAULT_STAGE_TIMEOUT_SECONDS, gt=0, le=900)
    job_timeout_seconds: float | None = Field(default=None, gt=0)

    # Result store
    cache_enabled: bool = True
    cache_max_entries: int = Field(default=constants.DEFAULT_CACHE_MAX_ENTRIES, ge=1)

    # Scheduling
    max_concurrent_jobs: int = Field(default=constants.DEFAULT_MAX_CONCURRENT_JOBS, ge=1, le=256)

    # Isolation
    scratch_root: Path | None = None
    require_network_isolation: bool = False
    require_filesystem_isolation: bool = False

    # Input limits
    max_code_size: int = Field(default=constants.MAX_CODE_SIZE, ge=1)

    def sandbox_limits(self) -> SandboxLimits:
        """Limits for one stage command; wall time never exceeds the stage timeout."""
        return SandboxLimits(
            cpu_seconds=self.cpu_seconds,
            memory_bytes=self.memory_mb * 1024 * 1024,
            wall_seconds=min(self.wall_seconds, self.stage_timeout_seconds),
            max_output_bytes=self.max_output_bytes,
        )

    def job_timeout_for(self, stage_count: int) -> float:
        """Job-level ceiling: explicit value, or the sum of per-stage timeouts."""
        if self.job_timeout_seconds is not None:
            return self.job_timeout_seconds
        return self.stage_timeout_seconds * max(1, stage_count)

    def get_scratch_root(self) -> Path:
        return self.scratch_root if self.scratch_root is not None else Path(tempfile.gettempdir())
