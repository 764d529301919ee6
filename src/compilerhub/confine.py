"""Filesystem confinement for sandboxed commands.

Runs inside a fresh user and mount namespace and execs the real command once
the host filesystem is read-only and only the scratch directory is writable:

    unshare --map-root-user --mount [--net] -- \
        python -I -B confine.py --outer-ns mnt:[...] SCRATCH -- argv...

The launcher runs as a standalone script so it starts fast and needs nothing
but click. --outer-ns is the caller's mount namespace; the launcher refuses
to touch mounts while it is still in it.

Steps, all confined to the new mount namespace:

1. bind-mount SCRATCH onto itself (its own mount point)
2. mount_setattr(/, AT_RECURSIVE, set=RDONLY) on the whole mount tree
3. mount_setattr(SCRATCH, AT_RECURSIVE, clear=RDONLY)
4. chdir(SCRATCH) and exec argv

Device nodes (/dev/null, /dev/tty) stay writable on a read-only mount.
Exit codes for a command that cannot start follow the shell convention.
"""

from __future__ import annotations

import ctypes
import errno
import os
import sys
from pathlib import Path
from typing import Final

import click

EXIT_COMMAND_NOT_FOUND: Final[int] = 127
EXIT_NOT_EXECUTABLE: Final[int] = 126
EXIT_CONFINE_FAILED: Final[int] = 125
"""The namespace could not be set up; the command never ran."""

CONFINE_SCRIPT: Final[str] = str(Path(__file__).resolve())

# asm-generic syscall table: same number on x86_64 and aarch64 (Linux >= 5.12)
_NR_MOUNT_SETATTR: Final[int] = 442
_AT_FDCWD: Final[int] = -100
_AT_RECURSIVE: Final[int] = 0x8000
_MOUNT_ATTR_RDONLY: Final[int] = 0x00000001
_MS_BIND: Final[int] = 4096
_MS_REC: Final[int] = 16384
_MS_PRIVATE: Final[int] = 1 << 18


class _MountAttr(ctypes.Structure):
    # struct mount_attr (MOUNT_ATTR_SIZE_VER0)
    _fields_ = [
        ("attr_set", ctypes.c_uint64),
        ("attr_clr", ctypes.c_uint64),
        ("propagation", ctypes.c_uint64),
        ("userns_fd", ctypes.c_uint64),
    ]


def confine_command_prefix(
    unshare_bin: str,
    python_bin: str,
    scratch: Path | str,
    *,
    network: bool,
) -> list[str]:
    """argv prefix that runs the rest of argv confined to scratch.

    Args:
        unshare_bin: util-linux unshare.
        python_bin: Interpreter with click installed.
        scratch: The only writable directory for the command.
        network: Also enter an empty network namespace.
    """
    namespaces = ["--map-root-user", "--mount", "--propagation", "private"]
    if network:
        namespaces.append("--net")
    launcher = [python_bin, "-I", "-B", CONFINE_SCRIPT, "--outer-ns", mount_namespace(), str(scratch), "--"]
    return [unshare_bin, *namespaces, "--", *launcher]


def _libc() -> ctypes.CDLL:
    libc = ctypes.CDLL(None, use_errno=True)
    libc.mount.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_ulong, ctypes.c_void_p]
    libc.mount.restype = ctypes.c_int
    libc.syscall.restype = ctypes.c_long
    return libc


def _raise_errno(what: str) -> None:
    err = ctypes.get_errno()
    raise OSError(err, f"{what}: {os.strerror(err)}")


def _bind_onto_itself(libc: ctypes.CDLL, path: bytes) -> None:
    if libc.mount(path, path, None, _MS_BIND | _MS_REC, None) != 0:
        _raise_errno(f"bind mount {path.decode()}")


def _set_readonly(libc: ctypes.CDLL, path: bytes, readonly: bool) -> None:
    attr = _MountAttr(
        attr_set=_MOUNT_ATTR_RDONLY if readonly else 0,
        attr_clr=0 if readonly else _MOUNT_ATTR_RDONLY,
    )
    result = libc.syscall(
        ctypes.c_long(_NR_MOUNT_SETATTR),
        ctypes.c_int(_AT_FDCWD),
        ctypes.c_char_p(path),
        ctypes.c_uint(_AT_RECURSIVE),
        ctypes.byref(attr),
        ctypes.c_size_t(ctypes.sizeof(attr)),
    )
    if result != 0:
        _raise_errno(f"mount_setattr {path.decode()}")


def mount_namespace() -> str:
    """Identity of the current mount namespace, e.g. ``mnt:[4026531841]``."""
    return os.readlink("/proc/self/ns/mnt")


def confine_to(scratch: Path, outer_ns: str) -> None:
    """Make every mount read-only except scratch, then enter scratch.

    Raises:
        OSError: Still in the outer mount namespace, or a mount call failed.
    """
    if mount_namespace() == outer_ns:
        raise OSError(errno.EPERM, f"still in the caller's mount namespace {outer_ns}, refusing to remount")
    libc = _libc()
    target = os.fsencode(scratch)
    if libc.mount(None, b"/", None, _MS_REC | _MS_PRIVATE, None) != 0:
        _raise_errno("make / private")
    _bind_onto_itself(libc, target)
    _set_readonly(libc, b"/", readonly=True)
    _set_readonly(libc, target, readonly=False)
    # The old cwd is the directory under the new mount point
    os.chdir(scratch)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--outer-ns", required=True, help="Mount namespace of the caller (never remounted).")
@click.argument("scratch", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def main(outer_ns: str, scratch: Path, command: tuple[str, ...]) -> None:
    """Run COMMAND with SCRATCH as the only writable directory."""
    try:
        confine_to(scratch.resolve(), outer_ns)
    except OSError as e:
        click.echo(f"confine: {e}", err=True)
        sys.exit(EXIT_CONFINE_FAILED)

    try:
        os.execvp(command[0], list(command))
    except FileNotFoundError:
        click.echo(f"confine: command not found: {command[0]}", err=True)
        sys.exit(EXIT_COMMAND_NOT_FOUND)
    except PermissionError as e:
        click.echo(f"confine: permission denied: {command[0]}: {e}", err=True)
        sys.exit(EXIT_NOT_EXECUTABLE)


if __name__ == "__main__":
    main()
