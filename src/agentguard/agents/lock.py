"""Per-agent claim locks.

A lock is a small JSON marker, ``{agent}/.claim.lock``, created with
``O_CREAT | O_EXCL`` so exactly one process wins. It records the holder
PID; a marker whose holder is no longer running (or that has stayed
unreadable past a short grace period) is stale and may be reclaimed, once.

Reclaiming is itself guarded by a second exclusive marker, so when
several processes find the same stale lock only one of them deletes it
and retries. The others report the lock as busy.
"""

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from agentguard.errors import LockBusyError, LockIOError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".claim.lock"
RECLAIM_SUFFIX = ".reclaim"
RELEASE_ATTEMPTS = 5
RELEASE_BACKOFF_SECONDS = 0.02
RECLAIM_GUARD_MAX_AGE_SECONDS = 5.0
UNREADABLE_LOCK_GRACE_SECONDS = 2.0


def is_process_running(pid: int) -> bool:
    """Check whether a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    except OSError:
        return False
    return True


@dataclass
class LockHandle:
    """Proof of a held lock; pass it back to release()."""

    agent: str
    path: Path
    pid: int


class AgentLockManager:
    """Acquires and releases claim locks under an agents directory."""

    def __init__(self, agents_dir: Path):
        self.agents_dir = agents_dir

    def lock_path(self, agent: str) -> Path:
        return self.agents_dir / agent / LOCK_FILE_NAME

    def acquire(self, agent: str) -> LockHandle:
        """Take the claim lock for ``agent``.

        Raises:
            LockBusyError: A live process holds the lock, or a stale lock
                was reclaimed by someone else first.
            LockIOError: The marker could not be created.
        """
        path = self.lock_path(agent)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockIOError(f"Could not create workspace for agent {agent}: {e}") from e

        if self._try_create(path):
            return LockHandle(agent=agent, path=path, pid=os.getpid())

        if not self._is_stale(path):
            holder = self._read_holder(path)
            owner = f" (PID {holder})" if holder is not None else ""
            raise LockBusyError(
                f"Agent {agent} is being claimed by another process{owner}.",
                hint="Try again in a moment.",
            )
        holder = self._read_holder(path)

        logger.debug(f"Reclaiming stale claim lock for {agent} (holder {holder})")
        if not self._reclaim(path):
            raise LockBusyError(f"Could not acquire claim lock for agent {agent}. Try again.")
        return LockHandle(agent=agent, path=path, pid=os.getpid())

    def release(self, handle: LockHandle) -> None:
        """Delete the marker. Failures are left for stale detection."""
        for attempt in range(RELEASE_ATTEMPTS):
            try:
                handle.path.unlink(missing_ok=True)
                return
            except OSError as e:
                if attempt == RELEASE_ATTEMPTS - 1:
                    logger.debug(f"Could not remove claim lock {handle.path}: {e}")
                    return
                time.sleep(RELEASE_BACKOFF_SECONDS)

    @contextmanager
    def hold(self, agent: str) -> Iterator[LockHandle]:
        handle = self.acquire(agent)
        try:
            yield handle
        finally:
            self.release(handle)

    def _try_create(self, path: Path) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise LockIOError(f"Could not create claim lock {path}: {e}") from e

        payload = {"pid": os.getpid(), "acquired": datetime.now(timezone.utc).isoformat()}
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f)
        return True

    @staticmethod
    def _read_holder(path: Path) -> int | None:
        try:
            data = json.loads(path.read_text())
            return int(data["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def _is_stale(self, path: Path) -> bool:
        """A marker is stale when its holder is dead.

        An unreadable marker only counts as stale once it is older than
        UNREADABLE_LOCK_GRACE_SECONDS: a fresh one may belong to a process
        that has created it but not yet written its pid.
        """
        holder = self._read_holder(path)
        if holder is not None:
            return not is_process_running(holder)
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return age > UNREADABLE_LOCK_GRACE_SECONDS

    def _reclaim(self, path: Path) -> bool:
        """Delete a stale marker and retry creation, once.

        Only the process holding the reclaim guard may delete the marker,
        and it re-checks staleness first: a competitor may already have
        reclaimed it and now be alive inside the lock.
        """
        guard = path.with_name(path.name + RECLAIM_SUFFIX)
        if not self._try_create(guard):
            self._clear_stale_guard(guard)
            return False

        try:
            if path.exists() and not self._is_stale(path):
                return False
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove stale claim lock {path}: {e}")
                return False
            return self._try_create(path)
        finally:
            try:
                guard.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove reclaim guard {guard}: {e}")

    def _clear_stale_guard(self, guard: Path) -> None:
        # A reclaimer that died mid-reclaim must not block the agent forever.
        holder = self._read_holder(guard)
        try:
            age = time.time() - guard.stat().st_mtime
        except OSError:
            return
        if (holder is not None and not is_process_running(holder)) or age > RECLAIM_GUARD_MAX_AGE_SECONDS:
            try:
                guard.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove stale reclaim guard {guard}: {e}")
