"""Tests for file-backed job locks."""
import json
import os
import socket
import time

import pytest

from flipper.locks import LockHeldError, backfill_lock_name, pid_alive

DEAD_PID = 999_999_999


def _write_foreign_lock(lock_manager, name, *, pid, created_ts=None):
    path = lock_manager.path_for(name)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(
            {
                "name": name,
                "pid": pid,
                "host": socket.gethostname(),
                "owner": "other",
                "created_ts": created_ts or time.time(),
            },
            fh,
        )
    return path


def test_acquire_writes_owner_and_blocks_second_acquire(lock_manager):
    info = lock_manager.acquire("canonical")

    with open(lock_manager.path_for("canonical"), encoding="utf-8") as fh:
        payload = json.load(fh)
    assert payload["pid"] == os.getpid()
    assert payload["name"] == "canonical"
    assert info.pid == os.getpid()

    with pytest.raises(LockHeldError, match="canonical"):
        lock_manager.acquire("canonical")


def test_release_is_idempotent(lock_manager):
    lock_manager.acquire("canonical")
    assert lock_manager.release("canonical") is True
    assert lock_manager.release("canonical") is False
    assert not os.path.exists(lock_manager.path_for("canonical"))


def test_hold_releases_on_error(lock_manager):
    with pytest.raises(ValueError):
        with lock_manager.hold("backfill-5m"):
            assert lock_manager.is_locked("backfill-5m")
            raise ValueError("boom")
    assert not lock_manager.is_locked("backfill-5m")


def test_stale_lock_is_cleared(lock_manager):
    assert not pid_alive(DEAD_PID)
    path = _write_foreign_lock(lock_manager, "canonical", pid=DEAD_PID)

    assert lock_manager.is_locked("canonical") is False
    assert not os.path.exists(path)

    _write_foreign_lock(lock_manager, "canonical", pid=DEAD_PID)
    lock_manager.acquire("canonical")
    assert lock_manager.holds("canonical")


def test_live_foreign_lock_is_respected(lock_manager):
    path = _write_foreign_lock(lock_manager, "canonical", pid=os.getppid())

    assert lock_manager.is_locked("canonical")
    with pytest.raises(LockHeldError):
        lock_manager.acquire("canonical")
    assert lock_manager.release("canonical") is False
    assert os.path.exists(path)


def test_list_and_force_release(lock_manager):
    _write_foreign_lock(lock_manager, backfill_lock_name("1h"), pid=os.getppid(), created_ts=time.time() - 120)
    lock_manager.acquire("canonical")

    listed = {info.name: info for info in lock_manager.list_locks()}
    assert sorted(listed) == ["backfill-1h", "canonical"]
    assert listed["backfill-1h"].age_seconds() >= 119
    assert listed["backfill-1h"].as_dict()["owner"] == "other"

    assert lock_manager.force_release("backfill-1h") is True
    assert lock_manager.force_release("backfill-1h") is False
    assert not lock_manager.is_locked("backfill-1h")


def test_release_all_drops_only_own_locks(lock_manager):
    foreign = _write_foreign_lock(lock_manager, "backfill-6h", pid=os.getppid())
    lock_manager.acquire("canonical")
    lock_manager.acquire("backfill-5m")

    assert lock_manager.release_all() == ["backfill-5m", "canonical"]
    assert os.path.exists(foreign)
    assert [info.name for info in lock_manager.list_locks()] == ["backfill-6h"]
