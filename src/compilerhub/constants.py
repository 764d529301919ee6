"""Constants for compilerhub configuration and limits."""

from typing import Final

# ============================================================================
# Sandbox Resource Defaults
# ============================================================================

DEFAULT_CPU_SECONDS: Final[float] = 10.0
"""Default CPU time limit per sandboxed command."""

DEFAULT_MEMORY_MB: Final[int] = 1024
"""Default resident memory limit per sandboxed command (whole process tree)."""

MIN_MEMORY_MB: Final[int] = 16
"""Minimum accepted memory limit in MB."""

DEFAULT_WALL_SECONDS: Final[float] = 20.0
"""Default wall-clock limit per sandboxed command."""

DEFAULT_MAX_OUTPUT_BYTES: Final[int] = 1_000_000  # 1MB
"""Default cap for each of stdout and stderr."""

MAX_FILE_SIZE_BYTES: Final[int] = 64 * 1024 * 1024  # 64MB
"""RLIMIT_FSIZE inside the sandbox (largest file a toolchain may write)."""


MONITOR_INTERVAL_SECONDS: Final[float] = 0.05
"""Poll interval of the memory/CPU watchdog."""

KILL_WAIT_SECONDS: Final[float] = 2.0
"""How long to wait for a killed process tree to be reaped."""

SCRATCH_CREATE_ATTEMPTS: Final[int] = 3
"""Attempts to create a scratch directory before reporting an internal fault."""

SANDBOX_ENV_PATH: Final[str] = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
"""PATH exported to sandboxed commands."""

SANDBOX_ENV_PASSTHROUGH: Final[tuple[str, ...]] = ("LANG", "LC_ALL", "JAVA_HOME", "GOROOT", "SDKROOT")
"""Host environment variables forwarded into the sandbox when set."""

# ============================================================================
# Pipeline Defaults
# ============================================================================

DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 30.0
"""Per-stage timeout ceiling."""

STAGE_TIMEOUT_GRACE_SECONDS: Final[float] = 5.0
"""Extra time a stage gets beyond its sandbox wall limit (scratch setup, teardown) before the pipeline abandons it."""

DEFAULT_MAX_CONCURRENT_JOBS: Final[int] = 8
"""Jobs allowed to run at once; the rest stay pending."""

DEFAULT_CACHE_MAX_ENTRIES: Final[int] = 256
"""Result store capacity (LRU)."""

MAX_CODE_SIZE: Final[int] = 256 * 1024  # 256KB
"""Maximum size in bytes for submitted source code."""

# ============================================================================
# Embedded toolchains
# ============================================================================

BRAINFUCK_TAPE_SIZE: Final[int] = 30_000
"""Tape cells of the embedded Brainfuck interpreter."""

BRAINFUCK_TRACE_LIMIT: Final[int] = 500
"""Maximum execution steps recorded in a debug trace."""

BRAINFUCK_TAPE_WINDOW: Final[int] = 16
"""Tape cells reported in the final execution state."""

# ============================================================================
# Export
# ============================================================================

EXPORT_MEDIA_TYPES: Final[dict[str, str]] = {
    "json": "application/json",
    "txt": "text/plain",
    "dot": "text/vnd.graphviz",
    "zip": "application/zip",
}
"""Media type per export format."""
