"""Advisory file lock shared by every code path touching a durable table."""

import asyncio
import json
import math
import os
import socket
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..utils.logging import get_logger


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within its max wait."""

    def __init__(self, message: str, holder: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.holder = holder


class FileLock:
    """Exclusive lock backed by an atomically created marker file.

    The marker holds an ownership token, the holder's pid/host and the
    acquisition time from the injected clock. A marker that cannot be parsed
    or belongs to a dead local process is reclaimed. Age only matters for
    markers whose holder cannot be checked (another host, no pid): those are
    reclaimed once older than ``stale_after``. Release only removes a marker
    carrying our own token.

    An in-process ``asyncio.Lock`` sits in front of the marker so coroutines
    in this process queue up fairly instead of polling the filesystem.
    """

    def __init__(
        self,
        path: Union[str, Path],
        poll_interval: float = 0.05,
        max_wait: float = 10.0,
        stale_after: float = 30.0,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.stale_after = stale_after
        self._clock = clock
        self._token_factory = token_factory
        self._sleep = sleep
        self._local = asyncio.Lock()
        self._token: Optional[str] = None
        self.logger = get_logger(self.__class__.__name__)

    @property
    def token(self) -> Optional[str]:
        """Ownership token while held, else None."""
        return self._token

    @property
    def locked(self) -> bool:
        """True while held here or by a marker that would not be reclaimed."""
        if self._local.locked():
            return True
        if not self.path.exists():
            return False
        return self._is_reclaimable(self.read_marker()) is None

    def read_marker(self) -> Optional[Dict[str, Any]]:
        """Return the current marker contents, or None if absent/unreadable."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    async def acquire(self, wait: bool = True) -> bool:
        """Acquire the lock.

        Args:
            wait: When False, return immediately instead of polling

        Returns:
            True when acquired; False only when ``wait`` is False and the lock is busy

        Raises:
            LockTimeoutError: If ``wait`` is True and max wait elapses
        """
        if not wait and self._local.locked():
            return False

        await self._local.acquire()
        try:
            acquired = await self._acquire_marker(wait)
        except BaseException:
            self._local.release()
            raise
        if not acquired:
            self._local.release()
        return acquired

    async def release(self) -> None:
        """Release the lock if we hold it."""
        token = self._token
        if token is None:
            return
        self._token = None
        try:
            marker = self.read_marker()
            if marker is not None and marker.get("token") == token:
                self.path.unlink(missing_ok=True)
            else:
                self.logger.warning(
                    "Lock marker no longer ours at release",
                    path=str(self.path),
                    holder=marker
                )
        finally:
            self._local.release()

    @asynccontextmanager
    async def hold(self):
        """Hold the lock for the duration of the block, releasing on error."""
        await self.acquire()
        try:
            yield self
        finally:
            await self.release()

    async def _acquire_marker(self, wait: bool) -> bool:
        token = self._token_factory()
        attempts = max(1, math.ceil(self.max_wait / self.poll_interval)) if wait else 1

        for attempt in range(attempts):
            if self._try_create(token):
                self._token = token
                return True
            if self._reclaim_if_invalid() and self._try_create(token):
                self._token = token
                return True
            if not wait:
                return False
            await self._sleep(self.poll_interval)

        holder = self.read_marker()
        self.logger.error(
            "Timed out waiting for lock",
            path=str(self.path),
            max_wait=self.max_wait,
            holder=holder
        )
        raise LockTimeoutError(f"Could not acquire lock {self.path} within {self.max_wait}s", holder)

    def _try_create(self, token: str) -> bool:
        """Publish a complete marker atomically via a hard link."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        marker = {
            "token": token,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": self._clock(),
        }
        tmp_path = self.path.with_name(f"{self.path.name}.{token}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(marker, f)
        try:
            os.link(tmp_path, self.path)
            return True
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)

    def _is_reclaimable(self, marker: Optional[Dict[str, Any]]) -> Optional[str]:
        if marker is None or not marker.get("token"):
            return "invalid"
        acquired_at = marker.get("acquired_at")
        if not isinstance(acquired_at, (int, float)):
            return "invalid"
        # A live local holder is never reclaimed, however long it has held the lock
        if marker.get("host") == socket.gethostname() and isinstance(marker.get("pid"), int):
            return None if _pid_alive(marker["pid"]) else "dead_holder"
        if self._clock() - acquired_at > self.stale_after:
            return "stale"
        return None

    def _reclaim_if_invalid(self) -> bool:
        """Move an illegitimate marker aside. Returns True if one was removed."""
        if not self.path.exists():
            return True
        marker = self.read_marker()
        reason = self._is_reclaimable(marker)
        if reason is None:
            return False

        tombstone = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.reclaim")
        try:
            os.replace(self.path, tombstone)
        except FileNotFoundError:
            return True

        # Someone may have taken the lock between our read and the move
        try:
            with open(tombstone, "r", encoding="utf-8") as f:
                moved = json.load(f)
        except (OSError, ValueError):
            moved = None
        if marker is not None and isinstance(moved, dict) and moved.get("token") != marker.get("token"):
            try:
                os.link(tombstone, self.path)
            except FileExistsError:
                pass
            tombstone.unlink(missing_ok=True)
            return False

        tombstone.unlink(missing_ok=True)
        self.logger.warning("Reclaimed lock marker", path=str(self.path), reason=reason, holder=marker)
        return True


def _pid_alive(pid: int) -> bool:
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        return True
    return True


def lock_from_settings(path: Union[str, Path], storage) -> FileLock:
    """Build a FileLock using the polling/staleness bounds from StorageSettings."""
    return FileLock(
        path,
        poll_interval=storage.lock_poll_interval_ms / 1000.0,
        max_wait=storage.lock_max_wait_seconds,
        stale_after=storage.lock_stale_seconds,
    )
