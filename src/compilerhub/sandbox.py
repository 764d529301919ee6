"""Sandbox executor: run one toolchain command under resource limits.

Each call gets a private scratch directory that is removed on every exit path
(normal exit, limit breach, child crash, caller cancellation). Limits are
enforced preemptively and reported as data, never raised:

- wall time: asyncio timeout around the child, then SIGKILL of the process tree
- memory:    RSS of the process tree polled via psutil, kill on breach
- cpu:       RLIMIT_CPU in the child plus polled tree CPU time
- output:    stdout/stderr capped at max_output_bytes, truncation flagged
- network:   fresh network namespace via ``unshare --map-root-user --net``
             when the host allows unprivileged user namespaces
- files:     private mount namespace where the host filesystem is read-only
             and only the scratch dir is writable (compilerhub.confine);
             cwd/HOME/TMPDIR point at the scratch dir, RLIMIT_FSIZE, no core dumps

Example:
    ```python
    executor = SandboxExecutor()
    result = await executor.execute(
        ["clang", "-fsyntax-only", "main.c"],
        {"main.c": source},
        SandboxLimits(cpu_seconds=5, memory_bytes=512 << 20, wall_seconds=10, max_output_bytes=1 << 20),
    )
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import resource
import signal
import sys
import tempfile
import time
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from compilerhub import constants
from compilerhub._logging import get_logger
from compilerhub.confine import EXIT_COMMAND_NOT_FOUND, EXIT_NOT_EXECUTABLE, confine_command_prefix
from compilerhub.exceptions import InternalFaultError, ScratchDirError
from compilerhub.models import ResourceExceeded, SandboxLimits, SandboxResult
from compilerhub.platform_utils import ProcessWrapper
from compilerhub.resource_cleanup import cleanup_process, cleanup_scratch_dir
from compilerhub.subprocess_utils import StreamCapture, drain_subprocess_output, log_task_exception
from compilerhub.system_probes import netns_command_prefix, probe_filesystem_confinement, probe_network_isolation

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping, Sequence

logger = get_logger(__name__)

# Directory holding the compilerhub package; embedded toolchains run as `python -m`
_PACKAGE_PARENT = str(Path(__file__).resolve().parent.parent)


def _limit_child(cpu_seconds: float) -> None:
    """preexec_fn: runs in the forked child before exec."""
    cpu_soft = max(1, math.ceil(cpu_seconds))
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_soft, cpu_soft + 1))
    resource.setrlimit(resource.RLIMIT_FSIZE, (constants.MAX_FILE_SIZE_BYTES, constants.MAX_FILE_SIZE_BYTES))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
    os.umask(0o077)


class _Watchdog:
    """Polls process-tree usage; kills the tree when memory or CPU limits are crossed."""

    def __init__(self, proc: ProcessWrapper, limits: SandboxLimits, context_id: str) -> None:
        self._proc = proc
        self._limits = limits
        self._context_id = context_id
        self.peak_rss = 0
        self.cpu_seconds = 0.0
        self.memory_exceeded = False
        self.cpu_exceeded = False

    async def run(self) -> None:
        while self._proc.returncode is None:
            usage = await self._proc.tree_usage()
            if usage is None:
                return
            self.peak_rss = max(self.peak_rss, usage.rss_bytes)
            self.cpu_seconds = max(self.cpu_seconds, usage.cpu_seconds)
            if usage.rss_bytes > self._limits.memory_bytes:
                self.memory_exceeded = True
            elif usage.cpu_seconds > self._limits.cpu_seconds:
                self.cpu_exceeded = True
            if self.memory_exceeded or self.cpu_exceeded:
                logger.warning(
                    "Sandbox limit exceeded, killing process tree",
                    extra={
                        "context_id": self._context_id,
                        "rss_bytes": usage.rss_bytes,
                        "cpu_seconds": round(usage.cpu_seconds, 3),
                        "memory": self.memory_exceeded,
                        "cpu": self.cpu_exceeded,
                    },
                )
                await self._proc.kill()
                return
            await asyncio.sleep(constants.MONITOR_INTERVAL_SECONDS)


class SandboxExecutor:
    """Runs commands in throwaway scratch directories under resource limits.

    Safe for concurrent use: calls share nothing but the cached isolation probe.

    Attributes:
        scratch_root: Parent directory for per-call scratch directories.
    """

    def __init__(
        self,
        scratch_root: Path | None = None,
        *,
        isolate_network: bool = True,
        require_network_isolation: bool = False,
        confine_filesystem: bool = True,
        require_filesystem_isolation: bool = False,
        unshare_bin: str = "unshare",
        python_bin: str | None = None,
    ) -> None:
        self.scratch_root = scratch_root if scratch_root is not None else Path(tempfile.gettempdir())
        self._isolate_network = isolate_network
        self._require_network_isolation = require_network_isolation
        self._confine_filesystem = confine_filesystem
        self._require_filesystem_isolation = require_filesystem_isolation
        self._unshare_bin = unshare_bin
        self._python_bin = python_bin or sys.executable

    # -------------------------------------------------------------------------
    # Scratch directory
    # -------------------------------------------------------------------------

    async def _create_scratch_dir(self, context_id: str) -> Path:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(constants.SCRATCH_CREATE_ATTEMPTS),
                wait=wait_random_exponential(multiplier=0.01, max=0.2),
                retry=retry_if_exception_type(OSError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=False,
            ):
                with attempt:
                    await aiofiles.os.makedirs(self.scratch_root, exist_ok=True)
                    path = await asyncio.to_thread(tempfile.mkdtemp, prefix="chub-", dir=self.scratch_root)
                    return Path(path)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ScratchDirError(
                f"Failed to create scratch directory under {self.scratch_root}: {cause}",
                context={"context_id": context_id, "scratch_root": str(self.scratch_root)},
            ) from cause
        raise ScratchDirError("Scratch directory creation did not run", context={"context_id": context_id})

    @contextlib.asynccontextmanager
    async def scratch_dir(self, context_id: str) -> AsyncIterator[Path]:
        """Private scratch directory, removed on exit (including cancellation)."""
        path = await self._create_scratch_dir(context_id)
        try:
            yield path
        finally:
            await cleanup_scratch_dir(path, context_id)

    @staticmethod
    async def _write_inputs(scratch: Path, input_files: Mapping[str, bytes | str]) -> None:
        for name, content in input_files.items():
            rel = PurePosixPath(name)
            if rel.is_absolute() or ".." in rel.parts or not rel.parts:
                raise ValueError(f"Input file name must be relative and inside the scratch dir: {name!r}")
            target = scratch.joinpath(*rel.parts)
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            data = content.encode("utf-8") if isinstance(content, str) else content
            async with aiofiles.open(target, "wb") as f:
                await f.write(data)

    @staticmethod
    async def _collect(scratch: Path, patterns: Sequence[str]) -> dict[str, bytes]:
        collected: dict[str, bytes] = {}
        for pattern in patterns:
            for path in sorted(scratch.glob(pattern)):
                if not path.is_file():
                    continue
                rel = path.relative_to(scratch).as_posix()
                if rel in collected:
                    continue
                async with aiofiles.open(path, "rb") as f:
                    collected[rel] = await f.read()
        return collected

    def _environment(self, scratch: Path) -> dict[str, str]:
        env = {
            "PATH": constants.SANDBOX_ENV_PATH,
            "HOME": str(scratch),
            "TMPDIR": str(scratch),
            "LC_ALL": "C.UTF-8",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONPATH": _PACKAGE_PARENT,
        }
        for name in constants.SANDBOX_ENV_PASSTHROUGH:
            if name in os.environ:
                env[name] = os.environ[name]
        host_path = os.environ.get("PATH")
        if host_path:
            # Toolchains installed outside the standard prefixes (SDKs, /opt, ~/go)
            env["PATH"] = f"{env['PATH']}:{host_path}"
        return env

    async def _isolation(self, context_id: str) -> tuple[bool, bool]:
        """(network, filesystem) isolation available for this call."""
        network = self._isolate_network and await probe_network_isolation(self._unshare_bin)
        if self._isolate_network and not network and self._require_network_isolation:
            raise InternalFaultError(
                "Network isolation required but network namespaces are unavailable",
                context={"context_id": context_id, "unshare_bin": self._unshare_bin},
            )
        filesystem = self._confine_filesystem and await probe_filesystem_confinement(
            self._unshare_bin, self._python_bin
        )
        if not filesystem and self._require_filesystem_isolation:
            raise InternalFaultError(
                "Filesystem isolation required but mount namespaces are unavailable",
                context={"context_id": context_id, "unshare_bin": self._unshare_bin},
            )
        return network, filesystem

    def _command_prefix(self, scratch: Path, *, network: bool, filesystem: bool) -> list[str]:
        if filesystem:
            return confine_command_prefix(self._unshare_bin, self._python_bin, scratch, network=network)
        if network:
            return netns_command_prefix(self._unshare_bin)
        return []

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        command: Sequence[str],
        input_files: Mapping[str, bytes | str],
        limits: SandboxLimits,
        *,
        collect: Sequence[str] = (),
        stdin: bytes | None = None,
        context_id: str = "-",
        env: Mapping[str, str] | None = None,
    ) -> SandboxResult:
        """Run command inside a fresh scratch directory.

        Args:
            command: argv; relative file arguments resolve inside the scratch dir.
            input_files: Files written into the scratch dir before the command starts.
            limits: CPU/memory/wall/output limits.
            collect: Glob patterns (relative to the scratch dir) of files to return.
            stdin: Bytes fed to the command's stdin (None = /dev/null).
            context_id: Correlation id for logs (e.g. "<job_id>:<stage>").
            env: Extra environment variables for the command.

        Returns:
            SandboxResult. Limit breaches are reported in resource_exceeded.

        Raises:
            ScratchDirError: The scratch directory could not be created.
            InternalFaultError: Network or filesystem isolation is required but unavailable.
        """
        if not command:
            raise ValueError("command must not be empty")

        network, filesystem = await self._isolation(context_id)

        async with self.scratch_dir(context_id) as scratch:
            prefix = self._command_prefix(scratch, network=network, filesystem=filesystem)
            try:
                await self._write_inputs(scratch, input_files)
            except OSError as e:
                raise ScratchDirError(
                    f"Failed to write sandbox input files: {e}",
                    context={"context_id": context_id, "scratch": str(scratch)},
                ) from e

            child_env = self._environment(scratch)
            if env:
                child_env.update(env)

            result = await self._run(
                [*prefix, *command],
                scratch=scratch,
                env=child_env,
                limits=limits,
                stdin=stdin,
                context_id=context_id,
            )
            if collect and result.exit_code is not None:
                result.artifacts = await self._collect(scratch, collect)
                result.artifact_paths = list(result.artifacts)
            return result

    async def _run(
        self,
        argv: list[str],
        *,
        scratch: Path,
        env: dict[str, str],
        limits: SandboxLimits,
        stdin: bytes | None,
        context_id: str,
    ) -> SandboxResult:
        started = time.monotonic()
        try:
            async_proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=scratch,
                env=env,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                preexec_fn=lambda: _limit_child(limits.cpu_seconds),
                start_new_session=True,
            )
        except FileNotFoundError:
            logger.warning("Sandbox command not found", extra={"context_id": context_id, "argv0": argv[0]})
            return SandboxResult(
                exit_code=EXIT_COMMAND_NOT_FOUND,
                stderr=f"command not found: {argv[0]}",
                wall_time_ms=int((time.monotonic() - started) * 1000),
            )
        except PermissionError as e:
            return SandboxResult(
                exit_code=EXIT_NOT_EXECUTABLE,
                stderr=f"permission denied: {argv[0]}: {e}",
                wall_time_ms=int((time.monotonic() - started) * 1000),
            )

        proc = ProcessWrapper(async_proc)
        logger.debug("Sandbox command started", extra={"context_id": context_id, "argv": argv, "pid": proc.pid})

        stdout = StreamCapture(limits.max_output_bytes)
        stderr = StreamCapture(limits.max_output_bytes)
        watchdog = _Watchdog(proc, limits, context_id)
        drain_task = asyncio.create_task(drain_subprocess_output(proc, stdout, stderr), name=f"drain:{context_id}")
        watch_task = asyncio.create_task(watchdog.run(), name=f"watchdog:{context_id}")
        watch_task.add_done_callback(log_task_exception)
        timed_out = False

        try:
            try:
                async with asyncio.timeout(limits.wall_seconds):
                    if stdin is not None and proc.stdin is not None:
                        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                            proc.stdin.write(stdin)
                            await proc.stdin.drain()
                            proc.stdin.close()
                    await proc.wait()
                # Descendants still holding the pipes open would stall the drain
                await proc.kill()
            except TimeoutError:
                timed_out = True
                logger.warning(
                    "Sandbox wall-time limit exceeded, killing process tree",
                    extra={"context_id": context_id, "wall_seconds": limits.wall_seconds},
                )
                await cleanup_process(proc, argv[0], context_id, kill_timeout=constants.KILL_WAIT_SECONDS)
            # Killed trees close their pipes; a stuck descendant must not hold us
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(constants.KILL_WAIT_SECONDS):
                    await asyncio.shield(drain_task)
        finally:
            if proc.returncode is None:
                await cleanup_process(proc, argv[0], context_id, kill_timeout=constants.KILL_WAIT_SECONDS)
            for task in (drain_task, watch_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(drain_task, watch_task, return_exceptions=True)

        wall_ms = int((time.monotonic() - started) * 1000)
        exit_code = proc.returncode
        exceeded = ResourceExceeded(
            cpu=watchdog.cpu_exceeded or exit_code == -signal.SIGXCPU,
            memory=watchdog.memory_exceeded,
            time=timed_out,
        )
        result = SandboxResult(
            exit_code=exit_code,
            stdout=stdout.text(),
            stderr=stderr.text(),
            wall_time_ms=wall_ms,
            cpu_time_ms=int(watchdog.cpu_seconds * 1000) if watchdog.cpu_seconds else None,
            peak_memory_bytes=watchdog.peak_rss or None,
            resource_exceeded=exceeded,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
        )
        logger.debug(
            "Sandbox command finished",
            extra={
                "context_id": context_id,
                "exit_code": exit_code,
                "wall_time_ms": wall_ms,
                "resource_exceeded": exceeded.names,
                "truncated": result.truncated,
            },
        )
        return result
