"""System capability probes for sandbox isolation and toolchain discovery.

Probes run once and cache their results. Async probes share a cache container
with lazily created locks so concurrent jobs do not stampede the probe.
"""

from __future__ import annotations

import asyncio
import shutil
import sys
import tempfile
from pathlib import Path

from compilerhub._logging import get_logger
from compilerhub.confine import confine_command_prefix
from compilerhub.platform_utils import HostOS, detect_host_os

logger = get_logger(__name__)


class _ProbeCache:
    """Container for cached probe results.

    Locks are created lazily because asyncio.Lock binds to the running loop.
    """

    __slots__ = ("_locks", "confine", "netns", "toolchains")

    def __init__(self) -> None:
        self.netns: dict[str, bool] = {}
        self.confine: dict[tuple[str, str], bool] = {}
        self.toolchains: dict[str, str | None] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def clear(self) -> None:
        self.netns.clear()
        self.confine.clear()
        self.toolchains.clear()
        self._locks.clear()


_probe_cache = _ProbeCache()


def netns_command_prefix(unshare_bin: str) -> list[str]:
    """Command prefix that runs the rest of argv in a fresh, empty network namespace.

    --map-root-user creates a user namespace first so no privileges are needed.
    The new namespace only has a down loopback interface.
    """
    return [unshare_bin, "--map-root-user", "--net", "--"]


async def probe_network_isolation(unshare_bin: str = "unshare") -> bool:
    """Check whether unprivileged network namespaces can be created (cached).

    Returns:
        True if ``unshare --map-root-user --net`` works, False otherwise
    """
    cached = _probe_cache.netns.get(unshare_bin)
    if cached is not None:
        return cached

    async with _probe_cache.get_lock(f"netns:{unshare_bin}"):
        cached = _probe_cache.netns.get(unshare_bin)
        if cached is not None:
            return cached

        if detect_host_os() != HostOS.LINUX or shutil.which(unshare_bin) is None:
            _probe_cache.netns[unshare_bin] = False
            logger.warning(
                "network namespaces unavailable (sandboxed commands keep host network)",
                extra={"unshare_bin": unshare_bin, "host_os": detect_host_os().name},
            )
            return False

        try:
            proc = await asyncio.create_subprocess_exec(
                *netns_command_prefix(unshare_bin),
                "true",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=5)
            available = proc.returncode == 0
            if available:
                logger.info("network namespace isolation enabled")
            else:
                logger.warning(
                    "network namespace isolation unavailable",
                    extra={"exit_code": proc.returncode, "stderr": stderr.decode(errors="replace").strip()[:200]},
                )
        except (OSError, TimeoutError) as e:
            logger.warning(
                "network namespace probe failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            available = False

        _probe_cache.netns[unshare_bin] = available
        return available


async def probe_filesystem_confinement(unshare_bin: str = "unshare", python_bin: str | None = None) -> bool:
    """Check whether commands can be confined to a writable scratch dir (cached).

    Runs the real confinement chain on a throwaway directory and expects a
    write inside it to succeed and a write next to it to fail. Needs
    unprivileged user and mount namespaces and mount_setattr (Linux >= 5.12).

    Returns:
        True if confinement works, False otherwise
    """
    python_bin = python_bin or sys.executable
    key = (unshare_bin, python_bin)
    cached = _probe_cache.confine.get(key)
    if cached is not None:
        return cached

    async with _probe_cache.get_lock(f"confine:{unshare_bin}:{python_bin}"):
        cached = _probe_cache.confine.get(key)
        if cached is not None:
            return cached

        if detect_host_os() != HostOS.LINUX or shutil.which(unshare_bin) is None:
            _probe_cache.confine[key] = False
            logger.warning(
                "filesystem confinement unavailable (sandboxed commands can write outside scratch)",
                extra={"unshare_bin": unshare_bin, "host_os": detect_host_os().name},
            )
            return False

        with tempfile.TemporaryDirectory(prefix="chub-probe-") as base:
            scratch = Path(base) / "scratch"
            scratch.mkdir()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *confine_command_prefix(unshare_bin, python_bin, scratch, network=False),
                    "sh",
                    "-c",
                    "touch inside && ! touch ../outside 2>/dev/null",
                    cwd=scratch,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=10)
                available = (
                    proc.returncode == 0 and (scratch / "inside").exists() and not (Path(base) / "outside").exists()
                )
                if available:
                    logger.info("filesystem confinement enabled")
                else:
                    logger.warning(
                        "filesystem confinement unavailable",
                        extra={"exit_code": proc.returncode, "stderr": stderr.decode(errors="replace").strip()[:200]},
                    )
            except (OSError, TimeoutError) as e:
                logger.warning(
                    "filesystem confinement probe failed",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                available = False

        _probe_cache.confine[key] = available
        return available


def resolve_binary(name: str) -> str | None:
    """Resolve a toolchain binary to an absolute path (cached). None when missing."""
    if name in _probe_cache.toolchains:
        return _probe_cache.toolchains[name]
    path = shutil.which(name)
    _probe_cache.toolchains[name] = path
    if path is None:
        logger.info("toolchain binary not found", extra={"binary": name})
    return path


def missing_binaries(names: list[str] | tuple[str, ...]) -> list[str]:
    """Names from the list that cannot be resolved on this host."""
    return [name for name in names if resolve_binary(name) is None]
