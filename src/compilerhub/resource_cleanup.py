"""Resource cleanup utilities for sandboxed commands.

Cleanup operations log errors instead of raising: they run in finally blocks
where a second exception would mask the first.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from compilerhub._logging import get_logger
from compilerhub.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 0.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a process tree (optional SIGTERM grace, then SIGKILL) and reap it.

    With term_timeout=0 the tree is killed immediately, which is what limit
    enforcement and cancellation need.

    Args:
        proc: ProcessWrapper to stop (None safe - returns immediately)
        name: Process name for logging (e.g., "clang", "javac")
        context_id: Context for logging (e.g., job id + stage)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL (0 skips SIGTERM)
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process was reaped, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already terminated",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            # Grandchildren may outlive the direct child
            await proc.kill()
            return True

        if term_timeout > 0:
            logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id})
            await proc.terminate()
            try:
                await proc.wait_with_timeout(timeout=term_timeout)
                return True
            except TimeoutError:
                logger.warning(
                    f"{name} didn't respond to SIGTERM, force killing",
                    extra={"context_id": context_id, "term_timeout": term_timeout},
                )

        logger.debug(f"Sending SIGKILL to {name}", extra={"context_id": context_id})
        await proc.kill()

        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            logger.debug(
                f"{name} killed",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"context_id": context_id})
        return True

    except asyncio.CancelledError:
        # Cleanup was interrupted; the kill signal (if sent) still stands
        raise

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_scratch_dir(
    scratch_dir: Path | None,
    context_id: str,
) -> bool:
    """Remove a sandbox scratch directory and everything in it.

    Silently succeeds if the directory is already gone.

    Returns:
        True if the directory no longer exists, False otherwise
    """
    if scratch_dir is None:
        return True

    try:
        if not await aiofiles.os.path.exists(scratch_dir):
            return True
        # Toolchains may leave read-only files (e.g. Go module cache)
        await asyncio.to_thread(shutil.rmtree, scratch_dir, onexc=_make_writable_and_retry)
        logger.debug("scratch dir removed", extra={"context_id": context_id, "path": str(scratch_dir)})
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            "scratch dir removal error",
            extra={
                "context_id": context_id,
                "path": str(scratch_dir),
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return False


def _make_writable_and_retry(func, path, _exc) -> None:  # noqa: ANN001
    p = Path(path)
    p.chmod(0o700)
    if p.parent.exists():
        p.parent.chmod(0o700)
    func(path)
