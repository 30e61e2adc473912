"""Cross-process mutex guarding the thread registry.

The gate is an advisory ``flock`` on a dedicated lock file next to the registry. The
kernel drops the lock when its holder exits, so a crashed process never blocks the
pool. A holder that is alive but hung is handled by the staleness policy: every
acquisition records ``pid``/``acquired_at`` in the lock file, and a waiter that finds
the recorded acquisition older than ``stale_after_s`` unlinks the file and locks a
fresh inode. Reclaims are serialized through a ``.reclaim`` sidecar lock and re-read
the holder from the inode about to be unlinked, so an outdated staleness reading never
removes a freshly acquired gate. Acquisition re-checks that the locked inode is still
the one at ``lock_path``.

Example usage:
    gate = MutexGate(Path("worktrees/.thread-registry.lock"), stale_after_s=600)
    with gate.hold(timeout=10):
        ...  # load, transform, replace the registry
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path

from iso_threads.errors import LockTimeout

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 0.05


@dataclass(frozen=True)
class HolderInfo:
    """Who acquired the gate and when (wall-clock epoch seconds)."""

    pid: int
    hostname: str
    acquired_at: float

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.acquired_at


class MutexGate:
    """Exclusive lock shared by independent processes and re-entrant per owning thread."""

    def __init__(
        self,
        lock_path: Path | str,
        *,
        stale_after_s: float = 0.0,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.reclaim_path = self.lock_path.with_name(self.lock_path.name + ".reclaim")
        self.stale_after_s = max(0.0, float(stale_after_s))
        self.poll_interval_s = max(0.001, float(poll_interval_s))
        self._fd: int | None = None
        self._depth = 0
        self._local = threading.RLock()

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, timeout: float) -> HolderInfo:
        """Block until the gate is owned or ``timeout`` seconds elapse.

        Raises:
            LockTimeout: The gate stayed held by another owner past ``timeout``.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        if not self._local.acquire(timeout=max(0.0, timeout)):
            raise LockTimeout(str(self.lock_path), timeout)
        if self._fd is not None:
            self._depth += 1
            return self.holder() or self._holder_info()

        try:
            return self._acquire_file(deadline, timeout)
        except BaseException:
            self._local.release()
            raise

    def _acquire_file(self, deadline: float, timeout: float) -> HolderInfo:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if (
                    self.stale_after_s
                    and self.is_stale(self.stale_after_s)
                    and self.reclaim()
                ):
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LockTimeout(str(self.lock_path), timeout) from None
                time.sleep(min(self.poll_interval_s, remaining))
                continue

            if not self._still_linked(fd):
                # Lost a race with a reclaim: the locked inode is no longer the gate.
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                continue

            info = self._holder_info()
            self._write_holder(fd, info)
            self._fd = fd
            self._depth = 1
            logger.debug("acquired %s (pid=%s)", self.lock_path, info.pid)
            return info

    def release(self) -> None:
        """Release ownership; a no-op when the gate is not held."""

        if self._fd is None:
            return
        self._depth -= 1
        if self._depth > 0:
            self._local.release()
            return
        fd = self._fd
        self._fd = None
        self._depth = 0
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
            self._local.release()
        logger.debug("released %s", self.lock_path)

    def holder(self) -> HolderInfo | None:
        """Read the recorded holder, or ``None`` when the gate looks free."""

        try:
            raw = self.lock_path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError):
            return None
        return _parse_holder(raw)

    def is_stale(self, max_age_s: float) -> bool:
        info = self.holder()
        if info is None:
            return False
        return info.age() > max_age_s

    def reclaim(self, max_age_s: float | None = None) -> bool:
        """Unlink the lock file if its holder is still older than ``max_age_s``.

        Defaults to ``stale_after_s``. Returns whether the file was unlinked; ``False``
        means another waiter already reclaimed the gate or the holder is fresh.
        """
        threshold = self.stale_after_s if max_age_s is None else max_age_s
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        sidecar = os.open(str(self.reclaim_path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(sidecar, fcntl.LOCK_EX)
            try:
                fd = os.open(str(self.lock_path), os.O_RDONLY)
            except FileNotFoundError:
                return False
            try:
                info = _parse_holder(os.pread(fd, 4096, 0).decode("utf-8", errors="replace"))
                if info is None or info.age() <= threshold or not self._still_linked(fd):
                    return False
                logger.warning(
                    "reclaiming stale registry lock %s (holder pid=%s, age=%.0fs)",
                    self.lock_path,
                    info.pid,
                    info.age(),
                )
                self.lock_path.unlink()
                return True
            finally:
                os.close(fd)
        finally:
            fcntl.flock(sidecar, fcntl.LOCK_UN)
            os.close(sidecar)

    @contextmanager
    def hold(self, timeout: float) -> Iterator[HolderInfo]:
        info = self.acquire(timeout)
        try:
            yield info
        finally:
            self.release()

    def _still_linked(self, fd: int) -> bool:
        try:
            on_disk = os.stat(self.lock_path)
        except FileNotFoundError:
            return False
        locked = os.fstat(fd)
        return (on_disk.st_dev, on_disk.st_ino) == (locked.st_dev, locked.st_ino)

    def _holder_info(self) -> HolderInfo:
        return HolderInfo(pid=os.getpid(), hostname=socket.gethostname(), acquired_at=time.time())

    def _write_holder(self, fd: int, info: HolderInfo) -> None:
        payload = json.dumps(asdict(info), sort_keys=True).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, payload, 0)
        os.fsync(fd)


def _parse_holder(raw: str) -> HolderInfo | None:
    raw = raw.strip()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
        return HolderInfo(
            pid=int(payload["pid"]),
            hostname=str(payload.get("hostname", "")),
            acquired_at=float(payload["acquired_at"]),
        )
    except (ValueError, KeyError, TypeError):
        return None
