"""Tests for SandboxExecutor: limits, scratch handling, output capture.

Commands are short Python scripts run with the test interpreter, so these
tests need no compiler toolchain.
"""

import asyncio
import re
import sys
from pathlib import Path

import pytest

from compilerhub.confine import CONFINE_SCRIPT, EXIT_CONFINE_FAILED, confine_command_prefix, mount_namespace
from compilerhub.exceptions import InternalFaultError, ScratchDirError
from compilerhub.models import SandboxLimits
from compilerhub.sandbox import EXIT_COMMAND_NOT_FOUND, SandboxExecutor
from compilerhub.subprocess_utils import StreamCapture
from compilerhub.system_probes import probe_filesystem_confinement
from tests.conftest import skip_unless_linux

LIMITS = SandboxLimits(cpu_seconds=10, memory_bytes=512 * 1024 * 1024, wall_seconds=20, max_output_bytes=1 << 20)


def _script(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def _scratch_dirs(root: Path) -> list[Path]:
    return list(root.glob("chub-*"))


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    return tmp_path / "scratch"


@pytest.fixture
def executor(scratch_root: Path) -> SandboxExecutor:
    return SandboxExecutor(scratch_root, isolate_network=False)


# ============================================================================
# Output capture
# ============================================================================


class TestStreamCapture:
    async def test_keeps_prefix_and_flags_truncation(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"0123456789")
        reader.feed_eof()
        capture = StreamCapture(4)
        await capture.consume(reader)
        assert capture.data == b"0123"
        assert capture.truncated

    async def test_fits(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data("héllo".encode())
        reader.feed_eof()
        capture = StreamCapture(100)
        await capture.consume(reader)
        assert capture.text() == "héllo"
        assert not capture.truncated

    async def test_none_stream(self) -> None:
        capture = StreamCapture(10)
        await capture.consume(None)
        assert capture.data == b""


# ============================================================================
# Execution
# ============================================================================


class TestExecute:
    async def test_exit_code_and_streams(self, executor: SandboxExecutor) -> None:
        code = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"
        result = await executor.execute(_script(code), {}, LIMITS)
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert not result.resource_exceeded.any
        assert result.wall_time_ms >= 0

    async def test_input_files_and_cwd(self, executor: SandboxExecutor) -> None:
        code = "print(open('src/a.txt').read() + open('b.txt').read())"
        result = await executor.execute(_script(code), {"src/a.txt": b"alpha", "b.txt": "beta"}, LIMITS)
        assert result.exit_code == 0
        assert result.stdout.strip() == "alphabeta"

    async def test_environment(self, executor: SandboxExecutor) -> None:
        code = (
            "import os; "
            "print(os.environ['CHUB_EXTRA'], os.path.realpath(os.getcwd()) == os.path.realpath(os.environ['HOME']))"
        )
        result = await executor.execute(_script(code), {}, LIMITS, env={"CHUB_EXTRA": "yes"})
        assert result.stdout.split() == ["yes", "True"]

    async def test_stdin(self, executor: SandboxExecutor) -> None:
        code = "import sys; sys.stdout.write(sys.stdin.read().upper())"
        result = await executor.execute(_script(code), {}, LIMITS, stdin=b"abc")
        assert result.stdout == "ABC"

    async def test_no_stdin_reads_eof(self, executor: SandboxExecutor) -> None:
        code = "import sys; print(repr(sys.stdin.read()))"
        result = await executor.execute(_script(code), {}, LIMITS)
        assert result.stdout.strip() == "''"

    async def test_collect(self, executor: SandboxExecutor) -> None:
        code = (
            "import os; os.makedirs('out'); "
            "open('out/x.bin', 'wb').write(b'\\x00\\x01'); open('top.bin', 'wb').write(b't'); "
            "open('y.txt', 'w').write('y')"
        )
        result = await executor.execute(_script(code), {}, LIMITS, collect=("**/*.bin",))
        assert result.exit_code == 0
        assert result.artifacts == {"out/x.bin": b"\x00\x01", "top.bin": b"t"}
        assert sorted(result.artifact_paths) == ["out/x.bin", "top.bin"]

    async def test_collect_includes_input_files(self, executor: SandboxExecutor) -> None:
        result = await executor.execute(_script("pass"), {"Main.class": b"\xca\xfe"}, LIMITS, collect=("*.class",))
        assert result.artifacts == {"Main.class": b"\xca\xfe"}

    async def test_output_truncation(self, executor: SandboxExecutor) -> None:
        limits = LIMITS.model_copy(update={"max_output_bytes": 1024})
        result = await executor.execute(_script("print('a' * 5000)"), {}, limits)
        assert result.exit_code == 0
        assert len(result.stdout) == 1024
        assert result.stdout_truncated
        assert result.truncated
        assert not result.stderr_truncated

    async def test_command_not_found(self, executor: SandboxExecutor) -> None:
        result = await executor.execute(["compilerhub-no-such-binary", "x"], {}, LIMITS)
        assert result.exit_code == EXIT_COMMAND_NOT_FOUND
        assert "compilerhub-no-such-binary" in result.stderr
        assert result.stdout == ""

    async def test_empty_command(self, executor: SandboxExecutor) -> None:
        with pytest.raises(ValueError, match="must not be empty"):
            await executor.execute([], {}, LIMITS)

    @pytest.mark.parametrize("name", ["../escape.txt", "/etc/passwd", "a/../../b", ""])
    async def test_input_names_stay_inside(self, executor: SandboxExecutor, scratch_root: Path, name: str) -> None:
        with pytest.raises(ValueError, match="relative"):
            await executor.execute(_script("pass"), {name: b"x"}, LIMITS)
        assert _scratch_dirs(scratch_root) == []


# ============================================================================
# Limits
# ============================================================================


@skip_unless_linux
class TestLimits:
    async def test_wall_time(self, executor: SandboxExecutor) -> None:
        limits = LIMITS.model_copy(update={"wall_seconds": 0.5})
        code = "import time; print('started', flush=True); time.sleep(30)"
        result = await executor.execute(_script(code), {}, limits)
        assert result.resource_exceeded.time
        assert result.resource_exceeded.names == ["time"]
        assert result.exit_code != 0
        # Output written before the kill is kept
        assert result.stdout == "started\n"
        assert result.wall_time_ms < 10_000

    @pytest.mark.slow
    async def test_busy_loop_is_stopped_at_wall_limit(self, executor: SandboxExecutor) -> None:
        limits = LIMITS.model_copy(update={"wall_seconds": 2})
        result = await executor.execute(_script("while True: pass"), {}, limits)
        assert result.resource_exceeded.time
        assert not result.resource_exceeded.cpu
        assert result.wall_time_ms < 2500

    async def test_cpu_time(self, executor: SandboxExecutor) -> None:
        limits = LIMITS.model_copy(update={"cpu_seconds": 1})
        result = await executor.execute(_script("while True: pass"), {}, limits)
        assert result.resource_exceeded.cpu
        assert not result.resource_exceeded.time
        assert result.exit_code != 0

    @pytest.mark.slow
    async def test_memory(self, executor: SandboxExecutor) -> None:
        limits = LIMITS.model_copy(update={"memory_bytes": 64 * 1024 * 1024})
        code = "import time; data = b'x' * (300 << 20); time.sleep(30)"
        result = await executor.execute(_script(code), {}, limits)
        assert result.resource_exceeded.memory
        assert result.exit_code != 0
        assert result.peak_memory_bytes is not None
        assert result.peak_memory_bytes > 64 * 1024 * 1024

    async def test_child_processes_are_killed(self, executor: SandboxExecutor, tmp_path: Path) -> None:
        marker = tmp_path / "grandchild-alive"
        grandchild = f"import time; time.sleep(2); open({str(marker)!r}, 'w')"
        code = f"import subprocess, sys, time; subprocess.Popen([sys.executable, '-c', {grandchild!r}]); time.sleep(30)"
        limits = LIMITS.model_copy(update={"wall_seconds": 0.5})
        result = await executor.execute(_script(code), {}, limits)
        assert result.resource_exceeded.time
        await asyncio.sleep(2.5)
        assert not marker.exists()


# ============================================================================
# Scratch directories
# ============================================================================


class TestScratch:
    async def test_removed_after_success(self, executor: SandboxExecutor, scratch_root: Path) -> None:
        await executor.execute(_script("open('left.txt', 'w').write('x')"), {"in.txt": b"x"}, LIMITS)
        assert scratch_root.is_dir()
        assert _scratch_dirs(scratch_root) == []

    async def test_each_call_is_private(self, executor: SandboxExecutor) -> None:
        code = "import os; print(sorted(os.listdir('.')))"
        first = await executor.execute(_script(code), {"a.txt": b"1"}, LIMITS)
        second = await executor.execute(_script(code), {"b.txt": b"2"}, LIMITS)
        assert "'a.txt'" in first.stdout
        assert "'a.txt'" not in second.stdout

    @skip_unless_linux
    async def test_removed_on_cancellation(self, executor: SandboxExecutor, scratch_root: Path) -> None:
        task = asyncio.create_task(executor.execute(_script("import time; time.sleep(30)"), {}, LIMITS))
        for _ in range(200):
            if _scratch_dirs(scratch_root):
                break
            await asyncio.sleep(0.05)
        assert _scratch_dirs(scratch_root)
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert _scratch_dirs(scratch_root) == []

    async def test_unusable_scratch_root(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        executor = SandboxExecutor(blocker, isolate_network=False)
        with pytest.raises(ScratchDirError, match="Failed to create scratch directory"):
            await executor.execute(_script("pass"), {}, LIMITS)

    async def test_required_isolation_unavailable(self, scratch_root: Path) -> None:
        executor = SandboxExecutor(
            scratch_root, require_network_isolation=True, unshare_bin="compilerhub-no-unshare"
        )
        with pytest.raises(InternalFaultError, match="Network isolation required"):
            await executor.execute(_script("pass"), {}, LIMITS)

    async def test_isolation_falls_back_when_optional(self, scratch_root: Path) -> None:
        executor = SandboxExecutor(scratch_root, unshare_bin="compilerhub-no-unshare")
        result = await executor.execute(_script("print('ok')"), {}, LIMITS)
        assert result.stdout == "ok\n"

    async def test_required_filesystem_isolation_unavailable(self, scratch_root: Path) -> None:
        executor = SandboxExecutor(
            scratch_root,
            isolate_network=False,
            require_filesystem_isolation=True,
            unshare_bin="compilerhub-no-unshare",
        )
        with pytest.raises(InternalFaultError, match="Filesystem isolation required"):
            await executor.execute(_script("pass"), {}, LIMITS)
        assert _scratch_dirs(scratch_root) == []


# ============================================================================
# Filesystem confinement
# ============================================================================


@skip_unless_linux
class TestConfinePrefix:
    def test_prefix(self) -> None:
        assert confine_command_prefix("unshare", "/usr/bin/python3", "/tmp/chub-x", network=True) == [
            "unshare",
            "--map-root-user",
            "--mount",
            "--propagation",
            "private",
            "--net",
            "--",
            "/usr/bin/python3",
            "-I",
            "-B",
            CONFINE_SCRIPT,
            "--outer-ns",
            mount_namespace(),
            "/tmp/chub-x",
            "--",
        ]

    def test_prefix_without_network(self) -> None:
        assert "--net" not in confine_command_prefix("unshare", "python3", "/s", network=False)

    def test_mount_namespace(self) -> None:
        assert re.fullmatch(r"mnt:\[\d+\]", mount_namespace())


@pytest.fixture
async def confined(scratch_root: Path) -> SandboxExecutor:
    if not await probe_filesystem_confinement():
        pytest.skip("user/mount namespaces or mount_setattr unavailable on this host")
    return SandboxExecutor(scratch_root, isolate_network=False, require_filesystem_isolation=True)


@skip_unless_linux
class TestConfinement:
    async def test_write_outside_scratch_fails(self, confined: SandboxExecutor, tmp_path: Path) -> None:
        outside = tmp_path / "outside.txt"
        result = await confined.execute(["sh", "-c", f"echo escaped > {outside}"], {}, LIMITS)
        assert result.exit_code != 0
        assert "Read-only file system" in result.stderr
        assert not outside.exists()

    async def test_scratch_home_and_tmpdir_are_writable(self, confined: SandboxExecutor) -> None:
        code = (
            "import os, tempfile; "
            "open('cwd.txt', 'w').write('a'); "
            "open(os.path.join(os.environ['HOME'], 'home.txt'), 'w').write('b'); "
            "tempfile.NamedTemporaryFile(dir=os.environ['TMPDIR']).close(); "
            "print('ok')"
        )
        result = await confined.execute(_script(code), {"in.txt": b"x"}, LIMITS, collect=("*.txt",))
        assert result.exit_code == 0, result.stderr
        assert result.stdout == "ok\n"
        assert result.artifacts == {"cwd.txt": b"a", "home.txt": b"b", "in.txt": b"x"}

    async def test_host_files_stay_readable(self, confined: SandboxExecutor, tmp_path: Path) -> None:
        host_file = tmp_path / "host.txt"
        host_file.write_text("visible")
        result = await confined.execute(_script(f"print(open({str(host_file)!r}).read())"), {}, LIMITS)
        assert result.stdout == "visible\n"

    async def test_command_not_found(self, confined: SandboxExecutor) -> None:
        result = await confined.execute(["compilerhub-no-such-binary"], {}, LIMITS)
        assert result.exit_code == EXIT_COMMAND_NOT_FOUND
        assert "compilerhub-no-such-binary" in result.stderr

    async def test_launcher_refuses_host_namespace(self, scratch_root: Path) -> None:
        executor = SandboxExecutor(scratch_root, isolate_network=False, confine_filesystem=False)
        launcher = [sys.executable, "-I", "-B", CONFINE_SCRIPT, "--outer-ns", mount_namespace()]
        argv = [*launcher, str(scratch_root), "--", "true"]
        result = await executor.execute(argv, {}, LIMITS)
        assert result.exit_code == EXIT_CONFINE_FAILED
        assert "refusing to remount" in result.stderr
