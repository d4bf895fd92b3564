from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from .horizons import GRANULARITY_SECONDS, align_down
from .pollers import NoChangesError

logger = logging.getLogger(__name__)

CHAIN_INTERVAL_SECONDS = 300


def next_boundary(now_ts: float, interval: int) -> int:
    return align_down(int(now_ts), interval) + int(interval)


def granularities_for_boundary(boundary_ts: int) -> list[str]:
    """Granularities whose window closes on this 5-minute UTC boundary."""
    out = ["5m"]
    if boundary_ts % GRANULARITY_SECONDS["1h"] == 0:
        out.append("1h")
    if boundary_ts % GRANULARITY_SECONDS["6h"] == 0:
        out.append("6h")
    if boundary_ts % GRANULARITY_SECONDS["24h"] == 0:
        out.append("24h")
    return out


@dataclass
class SchedulerStatus:
    started_ts: int | None = None
    latest_running: bool = False
    chain_running: bool = False
    last_latest_ok_ts: int | None = None
    last_latest_error: str | None = None
    latest_no_change_streak: int = 0
    next_latest_ts: int | None = None
    last_chain_boundary_ts: int | None = None
    last_chain_ok_ts: int | None = None
    last_chain_errors: list[str] = field(default_factory=list)
    next_chain_ts: int | None = None
    last_canonical_ts: int | None = None
    last_canonical_error: str | None = None
    last_canonical_skipped: bool = False
    last_cleanup_ts: int | None = None


class Scheduler:
    """Latest loop and granularity chain loop on two daemon threads.

    The latest loop wins contention: before each granularity poll the chain
    waits until any in-flight latest run is finished.
    """

    def __init__(
        self,
        *,
        poll_latest,
        poll_granularity,
        update_canonical,
        run_cleanup,
        latest_interval_seconds: int = 60,
        latest_max_retries: int = 3,
        latest_retry_delay_seconds: float = 5.0,
        chain_max_retries: int = 12,
        chain_retry_delay_seconds: float = 10.0,
        wait_poll_seconds: float = 1.0,
        canonical_wait_timeout_seconds: float = 900.0,
        clock=time.time,
    ) -> None:
        self.poll_latest = poll_latest
        self.poll_granularity = poll_granularity
        self.update_canonical = update_canonical
        self.run_cleanup = run_cleanup

        self.latest_interval_seconds = max(int(latest_interval_seconds), 1)
        self.latest_max_retries = max(int(latest_max_retries), 0)
        self.latest_retry_delay_seconds = max(float(latest_retry_delay_seconds), 0.0)
        self.chain_max_retries = max(int(chain_max_retries), 0)
        self.chain_retry_delay_seconds = max(float(chain_retry_delay_seconds), 0.0)
        self.wait_poll_seconds = max(float(wait_poll_seconds), 0.0)
        self.canonical_wait_timeout_seconds = max(float(canonical_wait_timeout_seconds), 0.0)
        self.clock = clock

        self._status = SchedulerStatus()
        self._status_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._latest_active = threading.Event()
        self._chain_active = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._set_status(started_ts=int(self.clock()))
        self._threads = [
            threading.Thread(target=self._latest_loop, name="latest-loop", daemon=True),
            threading.Thread(target=self._chain_loop, name="chain-loop", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Scheduler started")

    def stop(self, timeout: float | None = None) -> None:
        """Signal both loops and wait for in-flight work to finish."""
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        logger.info("Scheduler stopped")

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def get_status(self) -> dict:
        with self._status_lock:
            return {
                "started_ts": self._status.started_ts,
                "latest_running": self._status.latest_running,
                "chain_running": self._status.chain_running,
                "last_latest_ok_ts": self._status.last_latest_ok_ts,
                "last_latest_error": self._status.last_latest_error,
                "latest_no_change_streak": self._status.latest_no_change_streak,
                "next_latest_ts": self._status.next_latest_ts,
                "last_chain_boundary_ts": self._status.last_chain_boundary_ts,
                "last_chain_ok_ts": self._status.last_chain_ok_ts,
                "last_chain_errors": list(self._status.last_chain_errors),
                "next_chain_ts": self._status.next_chain_ts,
                "last_canonical_ts": self._status.last_canonical_ts,
                "last_canonical_error": self._status.last_canonical_error,
                "last_canonical_skipped": self._status.last_canonical_skipped,
                "last_cleanup_ts": self._status.last_cleanup_ts,
                "latest_interval_seconds": self.latest_interval_seconds,
            }

    def _set_status(self, **kwargs) -> None:
        with self._status_lock:
            for key, value in kwargs.items():
                setattr(self._status, key, value)

    def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; False when stop was requested."""
        if seconds > 0:
            self._stop_event.wait(seconds)
        return not self._stop_event.is_set()

    def next_latest_run(self, now_ts: float) -> int:
        with self._status_lock:
            last_ok = self._status.last_latest_ok_ts
        if last_ok is not None:
            return int(last_ok) + self.latest_interval_seconds
        return next_boundary(now_ts, 60)

    def run_latest_once(self) -> bool:
        self._latest_active.set()
        self._set_status(latest_running=True)
        succeeded = False
        try:
            for attempt in range(self.latest_max_retries + 1):
                try:
                    self.poll_latest()
                    succeeded = True
                    break
                except NoChangesError as exc:
                    with self._status_lock:
                        self._status.latest_no_change_streak += 1
                    if attempt >= self.latest_max_retries:
                        logger.info("[LATEST] %s after %s retries", exc, attempt)
                        self._set_status(last_latest_error=str(exc))
                        break
                    logger.debug("[LATEST] no changes, retry %s/%s", attempt + 1, self.latest_max_retries)
                    if not self._sleep(self.latest_retry_delay_seconds):
                        break
                except Exception as exc:
                    logger.exception("[LATEST] poll failed")
                    self._set_status(last_latest_error=str(exc))
                    break
        finally:
            self._latest_active.clear()
            self._set_status(latest_running=False)

        if not succeeded:
            return False

        self._set_status(last_latest_ok_ts=int(self.clock()), last_latest_error=None, latest_no_change_streak=0)
        if self._chain_active.is_set():
            logger.debug("[LATEST] chain active, leaving canonical update to it")
        else:
            self.run_canonical(wait=False)
        return True

    def run_canonical(self, *, wait: bool) -> bool:
        deadline = time.monotonic() + self.canonical_wait_timeout_seconds
        while True:
            try:
                result = self.update_canonical()
            except Exception as exc:
                logger.error("Canonical update failed: %s", exc)
                self._set_status(last_canonical_error=str(exc), last_canonical_skipped=False)
                return False

            if not getattr(result, "skipped", False):
                self._set_status(
                    last_canonical_ts=int(self.clock()),
                    last_canonical_error=None,
                    last_canonical_skipped=False,
                )
                return True

            self._set_status(last_canonical_skipped=True)
            if not wait or time.monotonic() >= deadline:
                logger.info("Canonical update skipped: lock held")
                return False
            if not self._sleep(self.wait_poll_seconds):
                return False

    def _wait_for_latest(self) -> bool:
        while self._latest_active.is_set():
            if not self._sleep(self.wait_poll_seconds):
                return False
        return not self._stop_event.is_set()

    def _poll_with_retry(self, granularity: str, target_api_ts: int) -> bool:
        for attempt in range(self.chain_max_retries + 1):
            try:
                self.poll_granularity(granularity, target_api_ts)
                return True
            except Exception as exc:
                if attempt >= self.chain_max_retries:
                    logger.error("[%s] giving up after %s retries: %s", granularity, attempt, exc)
                    return False
                logger.info("[%s] poll failed, retry %s/%s: %s", granularity, attempt + 1, self.chain_max_retries, exc)
                if not self._sleep(self.chain_retry_delay_seconds):
                    return False
        return False

    def run_chain_once(self, boundary_ts: int) -> list[str]:
        """Poll every granularity closing at ``boundary_ts``, then canonical and cleanup.

        Returns the granularities that could not be polled.
        """
        self._chain_active.set()
        self._set_status(chain_running=True, last_chain_boundary_ts=int(boundary_ts))
        failed: list[str] = []
        try:
            for granularity in granularities_for_boundary(int(boundary_ts)):
                if not self._wait_for_latest():
                    return failed
                target_api_ts = int(boundary_ts) - GRANULARITY_SECONDS[granularity]
                if not self._poll_with_retry(granularity, target_api_ts):
                    failed.append(granularity)

            if self.stopping:
                return failed
            self.run_canonical(wait=True)

            try:
                self.run_cleanup()
                self._set_status(last_cleanup_ts=int(self.clock()))
            except Exception:
                logger.exception("Retention cleanup failed")
        finally:
            self._chain_active.clear()
            self._set_status(
                chain_running=False,
                last_chain_errors=[f"{g}: poll failed" for g in failed],
            )

        if not failed:
            self._set_status(last_chain_ok_ts=int(self.clock()))
        return failed

    def _latest_loop(self) -> None:
        next_run = self.next_latest_run(self.clock())
        self._set_status(next_latest_ts=next_run)
        while not self._stop_event.is_set():
            now = self.clock()
            if now >= next_run:
                ok = self.run_latest_once()
                now = self.clock()
                next_run = self.next_latest_run(now) if ok else next_boundary(now, 60)
                self._set_status(next_latest_ts=next_run)
            self._stop_event.wait(min(max(next_run - now, 0.0), 1.0))

    def _chain_loop(self) -> None:
        next_run = next_boundary(self.clock(), CHAIN_INTERVAL_SECONDS)
        self._set_status(next_chain_ts=next_run)
        while not self._stop_event.is_set():
            now = self.clock()
            if now >= next_run:
                try:
                    self.run_chain_once(next_run)
                except Exception:
                    logger.exception("Granularity chain failed at %s", next_run)
                next_run = next_boundary(self.clock(), CHAIN_INTERVAL_SECONDS)
                self._set_status(next_chain_ts=next_run)
                now = self.clock()
            self._stop_event.wait(min(max(next_run - now, 0.0), 1.0))
