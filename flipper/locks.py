from __future__ import annotations

import atexit
import errno
import json
import logging
import os
import signal
import socket
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CANONICAL_LOCK = "canonical"
UNREADABLE_LOCK_GRACE_SECONDS = 60


def backfill_lock_name(granularity: str) -> str:
    return f"backfill-{granularity}"


class LockHeldError(RuntimeError):
    def __init__(self, name: str, info: "LockInfo | None" = None) -> None:
        self.name = name
        self.info = info
        owner = f" by pid={info.pid}" if info and info.pid is not None else ""
        super().__init__(f"Lock '{name}' is held{owner}")


@dataclass(frozen=True)
class LockInfo:
    name: str
    path: str
    pid: int | None
    host: str | None
    owner: str | None
    created_ts: float

    def age_seconds(self, now: float | None = None) -> float:
        return max((now if now is not None else time.time()) - self.created_ts, 0.0)

    def as_dict(self, now: float | None = None) -> dict:
        return {
            "name": self.name,
            "pid": self.pid,
            "host": self.host,
            "owner": self.owner,
            "created_ts": int(self.created_ts),
            "age_seconds": int(self.age_seconds(now)),
        }


def pid_alive(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM means the process exists under another user.
        return exc.errno == errno.EPERM
    return True


class JobLockManager:
    """Named lock files under one directory, one file per job.

    A lock file holds its owner (pid, host, thread) and creation time. A file
    whose owner process is gone is stale and gets cleared on the next check.
    """

    def __init__(self, lock_dir: str = ".locks") -> None:
        self.lock_dir = os.path.abspath(lock_dir)
        os.makedirs(self.lock_dir, exist_ok=True)
        self._mutex = threading.Lock()
        self._held: set[str] = set()

    def path_for(self, name: str) -> str:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in name)
        return os.path.join(self.lock_dir, f"{safe}.lock")

    def read(self, name: str) -> LockInfo | None:
        path = self.path_for(name)
        try:
            with open(path, encoding="utf-8") as fh:
                raw = fh.read()
            mtime = os.path.getmtime(path)
        except FileNotFoundError:
            return None

        try:
            payload = json.loads(raw) if raw.strip() else {}
        except ValueError:
            payload = {}
        pid = payload.get("pid")
        return LockInfo(
            name=str(payload.get("name") or name),
            path=path,
            pid=(int(pid) if pid is not None else None),
            host=payload.get("host"),
            owner=payload.get("owner"),
            created_ts=float(payload.get("created_ts") or mtime),
        )

    def _is_stale(self, info: LockInfo) -> bool:
        if info.host and info.host != socket.gethostname():
            return False
        if info.pid is None:
            return info.age_seconds() > UNREADABLE_LOCK_GRACE_SECONDS
        return not pid_alive(info.pid)

    def _clear_if_stale(self, name: str) -> LockInfo | None:
        info = self.read(name)
        if info is None:
            return None
        if self._is_stale(info):
            logger.warning("Removing stale lock %s (pid=%s age=%ss)", name, info.pid, int(info.age_seconds()))
            self._unlink(info.path)
            return None
        return info

    @staticmethod
    def _unlink(path: str) -> bool:
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        return True

    def acquire(self, name: str, *, owner: str | None = None) -> LockInfo:
        with self._mutex:
            current = self._clear_if_stale(name)
            if current is not None:
                raise LockHeldError(name, current)

            path = self.path_for(name)
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError as exc:
                raise LockHeldError(name, self.read(name)) from exc

            created_ts = time.time()
            payload = {
                "name": name,
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "owner": owner or threading.current_thread().name,
                "created_ts": created_ts,
            }
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            self._held.add(name)

        logger.debug("Acquired lock %s", name)
        return LockInfo(
            name=name,
            path=path,
            pid=payload["pid"],
            host=payload["host"],
            owner=payload["owner"],
            created_ts=created_ts,
        )

    def release(self, name: str) -> bool:
        with self._mutex:
            if name not in self._held:
                return False
            self._held.discard(name)
            removed = self._unlink(self.path_for(name))
        logger.debug("Released lock %s", name)
        return removed

    @contextmanager
    def hold(self, name: str, *, owner: str | None = None):
        info = self.acquire(name, owner=owner)
        try:
            yield info
        finally:
            self.release(name)

    def wait_until_free(
        self,
        name: str,
        *,
        poll_seconds: float = 1.0,
        timeout_seconds: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> bool:
        deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        while self.is_locked(name):
            if stop_event is not None and stop_event.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll_seconds)
        return True

    def is_locked(self, name: str) -> bool:
        with self._mutex:
            return self._clear_if_stale(name) is not None

    def holds(self, name: str) -> bool:
        with self._mutex:
            return name in self._held

    def list_locks(self) -> list[LockInfo]:
        out = []
        try:
            entries = sorted(os.listdir(self.lock_dir))
        except FileNotFoundError:
            return out
        for entry in entries:
            if not entry.endswith(".lock"):
                continue
            info = self.read(entry[: -len(".lock")])
            if info is not None:
                out.append(info)
        return out

    def force_release(self, name: str) -> bool:
        with self._mutex:
            self._held.discard(name)
            removed = self._unlink(self.path_for(name))
        if removed:
            logger.warning("Force-released lock %s", name)
        return removed

    def release_all(self) -> list[str]:
        with self._mutex:
            names = sorted(self._held)
            for name in names:
                self._unlink(self.path_for(name))
            self._held.clear()
        if names:
            logger.info("Released locks on exit: %s", ", ".join(names))
        return names


def install_exit_hooks(manager: JobLockManager) -> None:
    """Release every lock this process holds on exit, crash or SIGTERM."""
    atexit.register(manager.release_all)

    previous_excepthook = sys.excepthook

    def _excepthook(exc_type, exc, tb):
        manager.release_all()
        previous_excepthook(exc_type, exc, tb)

    sys.excepthook = _excepthook

    previous_thread_hook = threading.excepthook

    def _thread_excepthook(args):
        manager.release_all()
        previous_thread_hook(args)

    threading.excepthook = _thread_excepthook

    if threading.current_thread() is threading.main_thread():
        if signal.getsignal(signal.SIGTERM) in (signal.SIG_DFL, None):
            def _on_sigterm(signum, frame):
                raise SystemExit(128 + signum)

            signal.signal(signal.SIGTERM, _on_sigterm)
