from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO


class StateLockedError(RuntimeError):
    pass


@dataclass(frozen=True)
class StateLock:
    path: Path
    pid: int


@dataclass(frozen=True)
class LockDiagnostics:
    lock_path: Path
    pid_path: Path
    owner_pid: int | None
    owner_pid_alive: bool


def lock_paths_for(state_path: Path) -> tuple[Path, Path]:
    resolved = Path(state_path).expanduser().resolve()
    return resolved.with_name(resolved.name + ".lock"), resolved.with_name(resolved.name + ".pid")


def _pid_appears_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def get_lock_diagnostics(state_path: Path) -> LockDiagnostics:
    lock_path, pid_path = lock_paths_for(state_path)
    try:
        owner_raw = pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        owner_raw = ""
    owner_pid = int(owner_raw) if owner_raw.isdigit() else None
    return LockDiagnostics(
        lock_path=lock_path,
        pid_path=pid_path,
        owner_pid=owner_pid,
        owner_pid_alive=_pid_appears_alive(owner_pid) if owner_pid is not None else False,
    )


def _write_pid_file(pid_path: Path, pid: int) -> None:
    tmp_path = pid_path.with_suffix(f".pid.{pid}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as pid_file:
        pid_file.write(f"{pid}\n")
        pid_file.flush()
        os.fsync(pid_file.fileno())
    os.replace(tmp_path, pid_path)


def _remove_pid_file_if_owned(pid_path: Path, pid: int) -> None:
    try:
        if pid_path.read_text(encoding="utf-8").strip() != str(pid):
            return
        pid_path.unlink()
    except OSError:
        return


def _flock(fh: BinaryIO, *, unlock: bool) -> None:
    if os.name == "nt":
        import msvcrt

        msvcrt_mod: Any = msvcrt
        fh.seek(0)
        msvcrt_mod.locking(fh.fileno(), msvcrt_mod.LK_UNLCK if unlock else msvcrt_mod.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fh.fileno(), fcntl.LOCK_UN if unlock else fcntl.LOCK_EX | fcntl.LOCK_NB)


@contextmanager
def state_file_lock(state_path: Path) -> Iterator[StateLock]:
    """Hold an exclusive OS lock for one wallet's state file.

    Two processes driving the same persisted state would both consider themselves the single
    writer, so the second one fails fast here instead.
    """

    lock_path, pid_path = lock_paths_for(state_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fh: BinaryIO = os.fdopen(os.open(lock_path, os.O_CREAT | os.O_RDWR), "r+b")
    pid = os.getpid()
    acquired = False
    try:
        try:
            _flock(fh, unlock=False)
            acquired = True
        except OSError as exc:
            diagnostics = get_lock_diagnostics(state_path)
            owner = (
                f" owner_pid={diagnostics.owner_pid} owner_alive={diagnostics.owner_pid_alive}"
                if diagnostics.owner_pid is not None
                else ""
            )
            raise StateLockedError(
                f"LOCKED: another soldrip process is driving state_path={state_path} "
                f"lock_path={lock_path}.{owner}"
            ) from exc

        _write_pid_file(pid_path, pid)
        yield StateLock(path=lock_path, pid=pid)
    finally:
        try:
            if acquired:
                _flock(fh, unlock=True)
        except OSError:
            pass
        fh.close()
        if acquired:
            _remove_pid_file_if_owned(pid_path, pid)
