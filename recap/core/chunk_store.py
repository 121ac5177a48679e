"""
Chunk store: the capture-facing side of the database plus the recordings
root and its storage quota.

The capture process calls register_chunk / mark_chunk_completed /
mark_chunk_failed. Everything else reads chunks through the Database.
"""

import os
import time
import logging
import threading
from datetime import datetime
from pathlib import Path

from recap.core.constants import (
    RECORDINGS_DIR, STORAGE_QUOTA_BYTES, PURGE_BATCH_LIMIT,
)
from recap.core.db_sqlite import Database
from recap.core.models_sqlite import Chunk
from recap.core.cleanup import remove_files

logger = logging.getLogger(__name__)


def allocated_bytes(root: Path) -> int:
    """On-disk allocation (not apparent size) of every file under root."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            blocks = getattr(st, 'st_blocks', None)
            total += blocks * 512 if blocks is not None else st.st_size
    return total


class ChunkStore:
    """Registers recorded chunks and keeps the recordings root under quota."""

    def __init__(self, db: Database, recordings_dir: Path | None = None,
                 quota_bytes: int = STORAGE_QUOTA_BYTES,
                 purge_limit: int = PURGE_BATCH_LIMIT,
                 background_purge: bool = True):
        self.db = db
        self.recordings_dir = Path(recordings_dir or RECORDINGS_DIR)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes
        self.purge_limit = purge_limit
        self.background_purge = background_purge
        self._purge_lock = threading.Lock()
        self._purge_thread: threading.Thread | None = None

    # ── Capture-facing API ────────────────────────────────────────────

    def next_file_path(self, when: datetime | None = None) -> Path:
        when = when or datetime.now()
        name = when.strftime("%Y%m%d_%H%M%S") + f"{when.microsecond // 1000:03d}.mp4"
        return self.recordings_dir / name

    def register_chunk(self, path, start_ts: int | None = None) -> Chunk:
        """Insert a 'recording' row, then check the quota off the caller's thread."""
        if start_ts is None:
            start_ts = int(time.time())
        chunk = self.db.insert_chunk(str(path), start_ts)
        logger.debug("Registered chunk %d: %s", chunk.id, path)

        if self.background_purge:
            self._purge_thread = threading.Thread(
                target=self._purge_safely, args=(start_ts,), daemon=True, name="chunk-purge",
            )
            self._purge_thread.start()
        else:
            self._purge_safely(start_ts)
        return chunk

    def mark_chunk_completed(self, path, end_ts: int | None = None) -> bool:
        if end_ts is None:
            end_ts = int(time.time())
        updated = self.db.complete_chunk(str(path), end_ts)
        if not updated:
            logger.warning("mark_chunk_completed: no chunk registered for %s", path)
        return updated

    def mark_chunk_failed(self, path):
        """Drop the row and the partial file. File errors are only logged."""
        deleted = self.db.delete_chunk_by_path(str(path))
        if not deleted:
            logger.warning("mark_chunk_failed: %s not found or already batched", path)
            return
        remove_files([path])

    def fetch_unprocessed_chunks(self, oldest_allowed: int) -> list[Chunk]:
        return self.db.fetch_unprocessed_chunks(oldest_allowed)

    # ── Quota eviction ────────────────────────────────────────────────

    def _purge_safely(self, protect_from_ts: int | None = None):
        try:
            self.purge_if_needed(protect_from_ts)
        except Exception as e:
            logger.error("Storage purge failed: %s", e, exc_info=True)

    def purge_if_needed(self, protect_from_ts: int | None = None) -> list[Chunk]:
        """
        If the recordings root is over quota, evict up to purge_limit of the
        oldest chunks that belong to no batch. Never loops; the next
        registration checks again.

        A purge triggered by register_chunk passes the new chunk's start so
        that chunk, and any later one still recording, is left alone.
        """
        # another purge is already running
        if not self._purge_lock.acquire(blocking=False):
            return []
        try:
            used = allocated_bytes(self.recordings_dir)
            if used <= self.quota_bytes:
                return []

            logger.info("Recordings use %d bytes (quota %d), purging",
                        used, self.quota_bytes)
            evicted = self.db.claim_evictable_chunks(self.purge_limit, protect_from_ts)
            removed = remove_files(c.file_path for c in evicted)
            logger.info("Purged %d chunk(s), %d file(s) removed", len(evicted), removed)
            return evicted
        finally:
            self._purge_lock.release()
