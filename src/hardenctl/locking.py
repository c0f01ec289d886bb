"""Single-instance locking for hardenctl.

Locks are advisory ``flock`` locks on files under the runtime directory. The
lock file doubles as a JSON metadata record describing the holder (pid, host,
session id, timestamps) so ``--status`` and the watchdog can report who owns a
run without taking the lock themselves.

A metadata record without ``released_at`` whose ``flock`` can nevertheless be
obtained belongs to a holder that died; the next acquisition reports
``recovered`` so the caller takes the resume path.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import socket
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

RUN_LOCK_NAME = "hardenctl"
WATCHDOG_LOCK_NAME = "watchdog"

STATUS_ACQUIRED = "acquired"
STATUS_RECOVERED = "recovered"

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Base class for lock failures."""


class LockBusyError(LockError):
    """Raised when another live process holds the lock."""

    def __init__(self, message: str, holder: Mapping[str, object] | None = None) -> None:
        super().__init__(message)
        self.holder = dict(holder or {})


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class LockHandle:
    """An acquired lock; call :meth:`release` (idempotent) when done."""

    name: str
    path: Path
    session_id: str
    status: str
    wait_ms: int
    acquired_at: str
    previous: dict[str, object] | None = None
    _fd: int | None = field(default=None, repr=False)

    @property
    def recovered(self) -> bool:
        """True when a dead holder's lock was reclaimed."""
        return self.status == STATUS_RECOVERED

    @property
    def active(self) -> bool:
        """True while the lock is still held by this handle."""
        return self._fd is not None

    def release(self) -> None:
        """Stamp ``released_at`` and drop the lock."""
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            metadata = _metadata_payload(self, released_at=_now_iso())
            _rewrite(fd, metadata)
        except OSError:
            pass  # metadata stamp is best effort
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)


def _metadata_payload(handle: LockHandle, *, released_at: str | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "name": handle.name,
        "path": str(handle.path),
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "session_id": handle.session_id,
        "acquired_at": handle.acquired_at,
        "status": handle.status,
    }
    if released_at is not None:
        payload["released_at"] = released_at
    return payload


def _rewrite(fd: int, payload: Mapping[str, object]) -> None:
    data = (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")
    os.lseek(fd, 0, os.SEEK_SET)
    os.ftruncate(fd, 0)
    os.write(fd, data)
    os.fsync(fd)


def _read_fd(fd: int) -> dict[str, object] | None:
    os.lseek(fd, 0, os.SEEK_SET)
    chunks: list[bytes] = []
    while True:
        chunk = os.read(fd, 65536)
        if not chunk:
            break
        chunks.append(chunk)
    return _parse_metadata(b"".join(chunks))


def _parse_metadata(raw: bytes) -> dict[str, object] | None:
    if not raw.strip():
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return data


class LockManager:
    """Create and query the run lock and the watchdog lock."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 0.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = max(0.0, float(default_timeout))

    def lock_path(self, name: str = RUN_LOCK_NAME) -> Path:
        """Return the lock file used for *name*."""
        return self.runtime_dir / f"{name}.lock"

    def acquire(
        self,
        session_id: str,
        *,
        name: str = RUN_LOCK_NAME,
        timeout: float | None = None,
    ) -> LockHandle:
        """Acquire lock *name* for *session_id*.

        With the default timeout of zero this never waits: a live holder raises
        :class:`LockBusyError` immediately.
        """
        wait_limit = self.default_timeout if timeout is None else max(0.0, timeout)
        path = self.lock_path(name)
        try:
            self.runtime_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        start = time.monotonic()
        deadline = start + wait_limit
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES):
                    os.close(fd)
                    raise LockError(f"Unable to lock {path}: {exc}") from exc
                if time.monotonic() >= deadline:
                    holder = _parse_metadata(path.read_bytes()) if path.exists() else None
                    os.close(fd)
                    raise LockBusyError(
                        _busy_message(name, holder),
                        holder=holder,
                    ) from None
                time.sleep(_POLL_INTERVAL)

        wait_ms = int((time.monotonic() - start) * 1000)
        try:
            previous = _read_fd(fd)
            status = STATUS_ACQUIRED
            if previous is not None and not previous.get("released_at"):
                status = STATUS_RECOVERED
            handle = LockHandle(
                name=name,
                path=path,
                session_id=session_id,
                status=status,
                wait_ms=wait_ms,
                acquired_at=_now_iso(),
                previous=previous,
                _fd=fd,
            )
            _rewrite(fd, _metadata_payload(handle))
        except OSError as exc:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise LockError(f"Unable to record lock metadata in {path}: {exc}") from exc
        return handle

    @contextmanager
    def run_lock(self, session_id: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive run lock for the duration of the block."""
        handle = self.acquire(session_id, name=RUN_LOCK_NAME, timeout=timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def watchdog_lock(self, session_id: str) -> Iterator[LockHandle]:
        """Hold the single-supervisor lock; a second watchdog is refused."""
        handle = self.acquire(session_id, name=WATCHDOG_LOCK_NAME, timeout=0.0)
        try:
            yield handle
        finally:
            handle.release()

    def is_held(self, name: str = RUN_LOCK_NAME) -> bool:
        """Return True when a live process holds lock *name*.

        The probe uses a throwaway descriptor and never blocks.
        """
        path = self.lock_path(name)
        if not path.exists():
            return False
        try:
            fd = os.open(path, os.O_RDONLY)
        except OSError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except OSError as exc:
            if exc.errno in (errno.EAGAIN, errno.EACCES):
                return True
            raise LockError(f"Unable to probe lock {path}: {exc}") from exc
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    def holder(self, name: str = RUN_LOCK_NAME) -> dict[str, object] | None:
        """Return the metadata of the current holder, or None when free."""
        if not self.is_held(name):
            return None
        return self.metadata(name)

    def metadata(self, name: str = RUN_LOCK_NAME) -> dict[str, object] | None:
        """Return the raw metadata record of lock *name*, held or not."""
        path = self.lock_path(name)
        try:
            return _parse_metadata(path.read_bytes())
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LockError(f"Unable to read lock metadata {path}: {exc}") from exc


def _busy_message(name: str, holder: Mapping[str, object] | None) -> str:
    if not holder:
        return f"Lock '{name}' is held by another process."
    pid = holder.get("pid", "?")
    session = holder.get("session_id", "?")
    since = holder.get("acquired_at", "?")
    return f"Lock '{name}' is held by pid {pid} (session {session}, since {since})."


__all__ = [
    "LockBusyError",
    "LockError",
    "LockHandle",
    "LockManager",
    "RUN_LOCK_NAME",
    "STATUS_ACQUIRED",
    "STATUS_RECOVERED",
    "WATCHDOG_LOCK_NAME",
]
