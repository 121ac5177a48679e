"""
Batch formation: group completed chunks into analysis batches.

Buckets close on a gap larger than max_gap_sec or when the next chunk would
push cumulative duration past target_batch_sec. A trailing bucket below the
target is held back so recording can keep filling it.
"""

import logging
from dataclasses import dataclass, field

from recap.core.constants import MAX_GAP_SEC, TARGET_BATCH_SEC, MIN_BATCH_SEC
from recap.core.models_sqlite import Chunk

logger = logging.getLogger(__name__)


@dataclass
class BatchDraft:
    chunks: list[Chunk] = field(default_factory=list)
    too_short: bool = False

    @property
    def start_ts(self) -> int:
        return self.chunks[0].start_ts

    @property
    def end_ts(self) -> int:
        return self.chunks[-1].end_ts

    @property
    def duration(self) -> int:
        """Sum of chunk durations (recording time, gaps excluded)."""
        return sum(c.duration for c in self.chunks)

    @property
    def chunk_ids(self) -> list[int]:
        return [c.id for c in self.chunks]


def build_batches(chunks: list[Chunk],
                  max_gap_sec: int = MAX_GAP_SEC,
                  target_batch_sec: int = TARGET_BATCH_SEC,
                  min_batch_sec: int = MIN_BATCH_SEC,
                  drop_incomplete_tail: bool = True) -> list[BatchDraft]:
    """
    Group chunks into batch drafts.
    Every input chunk lands in at most one draft; drafts never overlap.
    """
    if not chunks:
        return []

    ordered = sorted(chunks, key=lambda c: (c.start_ts, c.end_ts))
    buckets: list[list[Chunk]] = []
    bucket: list[Chunk] = []
    bucket_dur = 0

    for chunk in ordered:
        if bucket:
            gap = chunk.start_ts - bucket[-1].end_ts
            if gap > max_gap_sec or bucket_dur + chunk.duration > target_batch_sec:
                buckets.append(bucket)
                bucket, bucket_dur = [], 0
        bucket.append(chunk)
        bucket_dur += chunk.duration

    if bucket:
        if drop_incomplete_tail and bucket_dur < target_batch_sec:
            logger.debug("Holding back trailing bucket of %d chunk(s) (%ds < %ds)",
                         len(bucket), bucket_dur, target_batch_sec)
        else:
            buckets.append(bucket)

    drafts = []
    for b in buckets:
        draft = BatchDraft(chunks=b)
        draft.too_short = draft.duration < min_batch_sec
        drafts.append(draft)
    return drafts
