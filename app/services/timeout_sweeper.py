from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta

from app.core.clock import Clock, utc_now
from app.schemas.conference import (
    ConferenceStatus,
    ConferenceTracking,
    DispatchOutcome,
    DispatchResult,
    DispatchTrigger,
    SweepReport,
)
from app.services.conference_tracking_store import ConferenceTrackingStore
from app.services.dispatch_coordinator import DispatchCoordinator

logger = logging.getLogger(__name__)

_ERROR_OUTCOMES = frozenset({DispatchOutcome.send_failed, DispatchOutcome.no_artifacts})
_SKIPPED_OUTCOMES = frozenset({DispatchOutcome.already_claimed, DispatchOutcome.already_processed})

# One scan at a time per process, shared by the scheduler thread and the cron route.
_PROCESS_SCAN_LOCK = threading.Lock()


class TimeoutSweeper:
    """Dispatches conferences whose deadline passed without all artifacts.

    Deadlines are stored data, so a scan after a restart picks up everything
    that became due while the process was down.
    """

    def __init__(
        self,
        store: ConferenceTrackingStore,
        coordinator: DispatchCoordinator,
        *,
        max_workers: int = 4,
        batch_size: int = 200,
        stale_after: timedelta = timedelta(minutes=30),
        clock: Clock = utc_now,
        scan_lock: threading.Lock | None = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.max_workers = max(max_workers, 1)
        self.batch_size = max(batch_size, 1)
        self.stale_after = stale_after
        self._clock = clock
        self._scan_lock = scan_lock or _PROCESS_SCAN_LOCK

    def scan(self, now: datetime | None = None) -> SweepReport:
        started_at = now or self._clock()
        if not self._scan_lock.acquire(blocking=False):
            logger.info("Timeout sweep already running, skipping overlapping scan")
            return SweepReport(started_at=started_at, finished_at=started_at, overlapped=True)

        try:
            return self._scan(started_at)
        finally:
            self._scan_lock.release()

    def _scan(self, now: datetime) -> SweepReport:
        report = SweepReport(started_at=now)
        report.released_stale_claims = self._release_stale_claims(now)

        candidates = [
            ConferenceTracking.model_validate(document)
            for document in self.store.list_due(now, self.batch_size)
        ]
        report.candidates = len(candidates)
        if candidates:
            with ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(candidates)),
                thread_name_prefix="timeout-sweep",
            ) as executor:
                futures = {
                    executor.submit(self.coordinator.dispatch, record, DispatchTrigger.timeout): record
                    for record in candidates
                }
                for future in as_completed(futures):
                    record = futures[future]
                    try:
                        result = future.result()
                    except Exception:
                        logger.exception(
                            "Timeout dispatch failed conference_id=%s",
                            record.conference_id,
                        )
                        report.errors += 1
                        continue
                    self._count(report, result)

        report.finished_at = self._clock()
        logger.info(
            "Timeout sweep finished candidates=%s processed=%s ignored=%s errors=%s skipped=%s released_stale_claims=%s",
            report.candidates,
            report.processed,
            report.ignored,
            report.errors,
            report.skipped,
            report.released_stale_claims,
        )
        return report

    def _release_stale_claims(self, now: datetime) -> int:
        released = 0
        for document in self.store.list_stale_claims(now - self.stale_after, self.batch_size):
            conference_id = document["conference_id"]
            updated = self.store.update(
                conference_id,
                {
                    "status": ConferenceStatus.error,
                    "claimed_at": None,
                    "last_error": "Dispatch claim expired before completion.",
                },
                expected_statuses={ConferenceStatus.processing},
            )
            if updated is not None:
                released += 1
                logger.warning(
                    "Stale dispatch claim released conference_id=%s claimed_at=%s",
                    conference_id,
                    document.get("claimed_at"),
                )
        return released

    @staticmethod
    def _count(report: SweepReport, result: DispatchResult) -> None:
        if result.outcome == DispatchOutcome.dispatched:
            report.processed += 1
        elif result.outcome == DispatchOutcome.ignored:
            report.ignored += 1
        elif result.outcome in _ERROR_OUTCOMES:
            report.errors += 1
        elif result.outcome in _SKIPPED_OUTCOMES:
            report.skipped += 1


class TimeoutSweepScheduler:
    """Runs a sweep callable on a daemon thread at a fixed interval."""

    def __init__(self, sweep: Callable[[], object], interval_seconds: float) -> None:
        self._sweep = sweep
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="timeout-sweep-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Timeout sweep scheduler started interval_seconds=%s", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Timeout sweep scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self._sweep()
            except Exception:
                logger.exception("Scheduled timeout sweep failed")
