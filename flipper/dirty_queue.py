from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from .aggregation import process_batch
from .db import dequeue_dirty_items, get_catalog_ids, get_dirty_snapshot, session_scope
from .locks import CANONICAL_LOCK, JobLockManager, LockHeldError

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_SELECTING = "selecting"
STATE_BATCHING = "batching"
STATE_COMMITTING = "committing"
STATE_ABORTING = "aborting"


class CanonicalUpdateError(RuntimeError):
    def __init__(self, failed_item_ids: list[int], errors: list[str]) -> None:
        self.failed_item_ids = list(failed_item_ids)
        self.errors = list(errors)
        super().__init__(
            f"{len(errors)} canonical batch(es) failed; {len(self.failed_item_ids)} item(s) left dirty: {errors[0] if errors else ''}"
        )


def batch_size_for(total: int) -> int:
    if total <= 50:
        return 25
    if total <= 300:
        return 50
    if total <= 1200:
        return 100
    return 200


@dataclass
class ProcessResult:
    skipped: bool = False
    full_refresh: bool = False
    dirty_count: int = 0
    selected: int = 0
    batches: int = 0
    batch_size: int = 0
    rows_written: int = 0
    dequeued: int = 0
    failed_item_ids: list[int] = field(default_factory=list)
    elapsed_ms: int = 0


class DirtyQueueProcessor:
    def __init__(
        self,
        *,
        lock_manager: JobLockManager,
        session_factory=session_scope,
        full_refresh_ratio: float = 0.8,
        batch_fn=process_batch,
    ) -> None:
        self.lock_manager = lock_manager
        self.session_factory = session_factory
        self.full_refresh_ratio = float(full_refresh_ratio)
        self.batch_fn = batch_fn
        self._state = STATE_IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    def _set_state(self, state: str) -> None:
        with self._state_lock:
            self._state = state

    def _select(self) -> tuple[list[int], dict[int, int], bool]:
        with self.session_factory() as session:
            dirty = get_dirty_snapshot(session)
            if not dirty:
                return [], dirty, False
            catalog = get_catalog_ids(session)

        full_refresh = bool(catalog) and len(dirty) > self.full_refresh_ratio * len(catalog)
        if full_refresh:
            selected = sorted(set(catalog) | set(dirty))
        else:
            selected = sorted(dirty)
        return selected, dirty, full_refresh

    def run(self, *, now_ts: int | None = None) -> ProcessResult:
        """Drain the dirty queue once under the canonical lock.

        Returns a skipped result when another run holds the lock. Raises
        CanonicalUpdateError after the pass if any batch failed.
        """
        try:
            self.lock_manager.acquire(CANONICAL_LOCK, owner="dirty-queue")
        except LockHeldError as exc:
            logger.info("Canonical update skipped: %s", exc)
            return ProcessResult(skipped=True)

        try:
            return self._run_locked(now_ts=now_ts)
        finally:
            self._set_state(STATE_IDLE)
            self.lock_manager.release(CANONICAL_LOCK)

    def _run_locked(self, *, now_ts: int | None) -> ProcessResult:
        started = time.perf_counter()
        result = ProcessResult()

        self._set_state(STATE_SELECTING)
        selected, dirty, full_refresh = self._select()
        result.dirty_count = len(dirty)
        result.full_refresh = full_refresh
        result.selected = len(selected)
        if not selected:
            logger.debug("Dirty queue empty; nothing to do")
            return result

        batch_size = batch_size_for(len(selected))
        result.batch_size = batch_size
        logger.info(
            "Canonical update: dirty=%s selected=%s full_refresh=%s batch_size=%s",
            len(dirty),
            len(selected),
            full_refresh,
            batch_size,
        )

        errors: list[str] = []
        for i in range(0, len(selected), batch_size):
            batch = selected[i:i + batch_size]
            batch_now = int(now_ts if now_ts is not None else time.time())
            result.batches += 1
            try:
                self._set_state(STATE_BATCHING)
                with self.session_factory() as session:
                    stats = self.batch_fn(session, batch, now_ts=batch_now)
                    self._set_state(STATE_COMMITTING)
                result.rows_written += int(stats.rows_written)
            except Exception as exc:
                self._set_state(STATE_ABORTING)
                result.failed_item_ids.extend(batch)
                errors.append(str(exc))
                logger.exception("Canonical batch %s failed (%s items left dirty)", result.batches, len(batch))
                continue

            # Items re-touched after selection stay queued for the next run.
            snapshot = {item_id: dirty[item_id] for item_id in batch if item_id in dirty}
            try:
                with self.session_factory() as session:
                    result.dequeued += dequeue_dirty_items(session, snapshot)
            except Exception as exc:
                errors.append(str(exc))
                logger.exception("Dequeue after batch %s failed", result.batches)

        result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "[PERF] canonical run selected=%s batches=%s rows=%s dequeued=%s failed=%s elapsed_ms=%s",
            result.selected,
            result.batches,
            result.rows_written,
            result.dequeued,
            len(result.failed_item_ids),
            result.elapsed_ms,
        )

        if errors:
            raise CanonicalUpdateError(result.failed_item_ids, errors)
        return result
