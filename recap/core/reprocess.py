"""
Reprocessing: wipe the derived outputs of past batches and run them again.
Batches are re-run one at a time through the scheduler's per-batch path.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from recap.core.constants import (
    BatchStatus, ErrorCode, TERMINAL_BATCH_STATUSES, REPROCESS_POLL_SEC,
)
from recap.core.db_sqlite import Database
from recap.core.error_codes import AnalysisError
from recap.core.scheduler import AnalysisScheduler
from recap.core.timeparse import logical_day, format_duration
from recap.core.cleanup import remove_files, prune_empty_dirs

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


@dataclass
class BatchOutcome:
    batch_id: int
    status: str
    duration_sec: float


@dataclass
class ReprocessResult:
    batch_ids: list[int]
    days: list[str] = field(default_factory=list)
    outcomes: list[BatchOutcome] = field(default_factory=list)
    deleted_videos: int = 0
    total_sec: float = 0.0

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def completed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == BatchStatus.COMPLETED)

    def summary(self) -> str:
        lines = [
            "Reprocessing summary:",
            f"Total batches: {len(self.batch_ids)}",
            f"Processed: {self.processed} ({self.completed} completed)",
            f"Total time: {format_duration(self.total_sec)}",
        ]
        if self.outcomes:
            lines.append("")
            lines.append("Batch timings:")
            for i, o in enumerate(self.outcomes, 1):
                lines.append(f"  Batch {i} (#{o.batch_id}): {o.status} in {format_duration(o.duration_sec)}")
            avg = sum(o.duration_sec for o in self.outcomes) / len(self.outcomes)
            lines.append("")
            lines.append(f"Average time per batch: {format_duration(avg)}")
        return "\n".join(lines)


class ReprocessingEngine:
    """Invalidates and re-runs analysis for a logical day or a set of batches."""

    def __init__(self, db: Database, scheduler: AnalysisScheduler,
                 poll_interval: float = REPROCESS_POLL_SEC):
        self.db = db
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()

    def cancel(self):
        """Abort the in-flight upload wait and start no further batches."""
        self._stop_event.set()
        self.scheduler.cancel_inflight()

    # ── Synchronous API ───────────────────────────────────────────────

    def reprocess_day(self, day: str,
                      progress: Optional[ProgressCallback] = None) -> ReprocessResult:
        emit = progress or (lambda msg: None)
        emit(f"Preparing to reprocess day {day}...")
        batch_ids = [b.id for b in self.db.fetch_batches_for_day(day)]
        if not batch_ids:
            emit(f"No batches found for day {day}")
            deleted = self._delete_cards([day], emit)
            return ReprocessResult(batch_ids=[], days=[day], deleted_videos=deleted)
        return self._reprocess(batch_ids, [day], emit)

    def reprocess_batches(self, batch_ids: list[int],
                          progress: Optional[ProgressCallback] = None) -> ReprocessResult:
        emit = progress or (lambda msg: None)
        emit(f"Preparing to reprocess {len(batch_ids)} selected batch(es)...")

        batches = []
        for batch_id in batch_ids:
            batch = self.db.get_batch(batch_id)
            if batch is None:
                logger.warning("Reprocess: batch %d not found, skipping", batch_id)
                continue
            batches.append(batch)
        if not batches:
            raise AnalysisError(ErrorCode.BATCH_NOT_FOUND,
                                f"None of the batches {batch_ids} exist")

        batches.sort(key=lambda b: b.start_ts)
        # Cards can span batches, so every affected day is rebuilt
        days = sorted({logical_day(b.start_ts)[0] for b in batches})
        return self._reprocess([b.id for b in batches], days, emit)

    # ── Async API ─────────────────────────────────────────────────────

    def _run_async(self, fn, arg, progress, completion) -> threading.Thread:
        def worker():
            try:
                result = fn(arg, progress)
            except Exception as e:
                logger.error("Reprocessing failed: %s", e, exc_info=True)
                if completion:
                    completion(None, e)
                return
            if completion:
                completion(result, None)

        thread = threading.Thread(target=worker, daemon=True, name="reprocess")
        thread.start()
        return thread

    def reprocess_day_async(self, day: str, progress: Optional[ProgressCallback] = None,
                            completion: Optional[Callable] = None) -> threading.Thread:
        """Run reprocess_day on the engine's thread; completion(result, error)."""
        return self._run_async(self.reprocess_day, day, progress, completion)

    def reprocess_batches_async(self, batch_ids: list[int],
                                progress: Optional[ProgressCallback] = None,
                                completion: Optional[Callable] = None) -> threading.Thread:
        return self._run_async(self.reprocess_batches, batch_ids, progress, completion)

    # ── Internals ─────────────────────────────────────────────────────

    def _delete_cards(self, days: list[str], emit: ProgressCallback,
                      batch_ids: list[int] | None = None) -> int:
        # a batch can own cards that start on the previous logical day
        paths = self.db.delete_timeline_cards_for_batches(batch_ids or [])
        for day in days:
            paths.extend(self.db.delete_timeline_cards_for_day(day))
        removed = remove_files(paths)
        prune_empty_dirs(self.scheduler.timelapse_root)
        emit(f"Deleted timeline cards for {', '.join(days)} and {removed} timelapse file(s)")
        return removed

    def _reprocess(self, batch_ids: list[int], days: list[str],
                   emit: ProgressCallback) -> ReprocessResult:
        self._stop_event.clear()
        started = time.monotonic()
        result = ReprocessResult(batch_ids=list(batch_ids), days=list(days))

        # 1. invalidate everything derived from these batches
        result.deleted_videos = self._delete_cards(days, emit, batch_ids)
        deleted_obs = self.db.delete_observations(batch_ids)
        emit(f"Deleted {deleted_obs} observation(s) for {len(batch_ids)} batch(es)")
        reset = self.db.reset_batch_statuses(batch_ids)
        emit(f"Reset {reset} batch(es) to pending status")

        # 2. re-run one at a time
        for index, batch_id in enumerate(batch_ids, 1):
            if self._stop_event.is_set():
                emit("Reprocessing cancelled")
                break
            emit(f"Processing batch {index} of {len(batch_ids)}... "
                 f"(Total elapsed: {format_duration(time.monotonic() - started)})")
            batch_started = time.monotonic()
            self.scheduler.submit_batch(batch_id)
            status = self._wait_for_terminal(batch_id)
            elapsed = time.monotonic() - batch_started
            result.outcomes.append(BatchOutcome(batch_id, status, elapsed))
            if status == BatchStatus.COMPLETED:
                emit(f"Batch {index} completed in {format_duration(elapsed)}")
            else:
                emit(f"Batch {index} ended with status '{status}' after {format_duration(elapsed)}")

        result.total_sec = time.monotonic() - started
        emit(result.summary())
        logger.info("Reprocessed %d of %d batch(es) in %.1fs",
                    result.processed, len(batch_ids), result.total_sec)
        return result

    def _wait_for_terminal(self, batch_id: int) -> str:
        while True:
            if self._stop_event.wait(self.poll_interval):
                return "cancelled"
            batch = self.db.get_batch(batch_id)
            if batch is None:
                logger.warning("Batch %d disappeared while reprocessing", batch_id)
                return BatchStatus.FAILED
            if batch.status in TERMINAL_BATCH_STATUSES:
                return batch.status
