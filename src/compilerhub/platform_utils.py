"""Host OS detection and PID-reuse safe process management.

Uses psutil's OS constants for platform identification and wraps asyncio
subprocesses with psutil.Process handles so the sandbox can measure and kill
a whole process tree (compiler drivers fork cc1, ld, the Go toolchain forks
compile/asm/link).
"""

import asyncio
import contextlib
import os
import signal
from dataclasses import dataclass
from enum import Enum, auto
from functools import cache

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (namespaces and rlimits available)."""

    MACOS = auto()
    """macOS (rlimits only, no network namespaces)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


@dataclass(frozen=True)
class TreeUsage:
    """Point-in-time resource usage of a process and its descendants."""

    rss_bytes: int
    cpu_seconds: float


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    @property
    def stdin(self):
        return self.async_proc.stdin

    @property
    def stdout(self):
        return self.async_proc.stdout

    @property
    def stderr(self):
        return self.async_proc.stderr

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit; pipes are expected to be drained by the caller's readers.

        Raises:
            TimeoutError: If the process doesn't exit within timeout
        """
        async with asyncio.timeout(timeout):
            return await self.async_proc.wait()

    def _tree(self) -> list[psutil.Process]:
        if self.psutil_proc is None:
            return []
        try:
            return [self.psutil_proc, *self.psutil_proc.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def _usage(self) -> TreeUsage | None:
        rss = 0
        cpu = 0.0
        procs = self._tree()
        if not procs:
            return None
        for proc in procs:
            try:
                with proc.oneshot():
                    rss += proc.memory_info().rss
                    times = proc.cpu_times()
                    cpu += times.user + times.system
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return TreeUsage(rss_bytes=rss, cpu_seconds=cpu)

    async def tree_usage(self) -> TreeUsage | None:
        """Sum RSS and CPU time over the process tree (None once it is gone)."""
        return await asyncio.to_thread(self._usage)

    def _signal_tree(self, kill: bool) -> None:
        # Children first so they are not re-parented mid-walk
        for proc in reversed(self._tree()):
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                if kill:
                    proc.kill()
                else:
                    proc.terminate()
        # Descendants already re-parented away from the tree still share the
        # session's process group (the child is started with start_new_session)
        if self.pid:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.pid, signal.SIGKILL if kill else signal.SIGTERM)

    async def terminate(self) -> None:
        """SIGTERM the process tree."""
        await asyncio.to_thread(self._signal_tree, False)
        if self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.terminate()

    async def kill(self) -> None:
        """SIGKILL the process tree, including descendants of an already exited child."""
        await asyncio.to_thread(self._signal_tree, True)
        if self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()
