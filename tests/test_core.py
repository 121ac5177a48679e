#!/usr/bin/env python3
"""
Unit tests for ScreenRecap core modules.
Tests cover: time conversion, batch building, config, error codes, database, chunk store.
"""

import sys
import os
import tempfile
import sqlite3
from datetime import datetime
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from recap.core.constants import (
    BatchStatus, ChunkStatus, ErrorCode, ProviderType, RETRYABLE_ERRORS,
)
from recap.core.error_codes import AnalysisError, is_retryable
from recap.core.models_sqlite import Chunk, Observation, TimelineCard, LLMCall
from recap.core.timeparse import (
    parse_video_timestamp, format_video_timestamp, video_to_absolute,
    absolute_to_video, day_bounds, logical_day, format_clock_time,
    parse_time_hmma, format_duration,
)
from recap.core.batching import build_batches


def _chunk(id, start, end, path=None):
    return Chunk(id=id, start_ts=start, end_ts=end,
                 file_path=path or f"{id}.mp4", status=ChunkStatus.COMPLETED)


class TestVideoTimestamps(unittest.TestCase):
    """Test video-relative timestamp parsing and formatting."""

    def test_parse_minutes_seconds(self):
        self.assertEqual(parse_video_timestamp("05:30"), 330)
        self.assertEqual(parse_video_timestamp("00:00"), 0)

    def test_parse_hours(self):
        self.assertEqual(parse_video_timestamp("01:02:03"), 3723)

    def test_parse_negative(self):
        self.assertEqual(parse_video_timestamp("-12:30"), -750)

    def test_parse_invalid(self):
        for bad in ("", "abc", "5", "00:75", "1:60:00", "12:3x"):
            with self.subTest(value=bad):
                with self.assertRaises(ValueError):
                    parse_video_timestamp(bad)

    def test_format(self):
        self.assertEqual(format_video_timestamp(330), "05:30")
        self.assertEqual(format_video_timestamp(3723), "01:02:03")
        self.assertEqual(format_video_timestamp(-750), "-12:30")

    def test_absolute_round_trip(self):
        batch_start = 1_700_000_000
        for unix_ts in (batch_start, batch_start + 899, batch_start - 1800, batch_start + 4000):
            rel = absolute_to_video(unix_ts, batch_start)
            self.assertEqual(video_to_absolute(rel, batch_start), unix_ts)


class TestLogicalDay(unittest.TestCase):
    """Test the 4 AM logical day boundary."""

    def test_before_boundary_belongs_to_previous_day(self):
        ts = int(datetime(2024, 5, 11, 2, 0).timestamp())
        day, start_ts, end_ts = logical_day(ts)
        self.assertEqual(day, "2024-05-10")
        self.assertLessEqual(start_ts, ts)
        self.assertLess(ts, end_ts)

    def test_after_boundary(self):
        ts = int(datetime(2024, 5, 11, 4, 0).timestamp())
        self.assertEqual(logical_day(ts)[0], "2024-05-11")

    def test_day_bounds(self):
        start_ts, end_ts = day_bounds("2024-05-11")
        self.assertEqual(start_ts, int(datetime(2024, 5, 11, 4, 0).timestamp()))
        self.assertEqual(end_ts, int(datetime(2024, 5, 12, 4, 0).timestamp()))


class TestClockHelpers(unittest.TestCase):

    def test_format_clock_time(self):
        ts = int(datetime(2024, 5, 11, 14, 5).timestamp())
        self.assertEqual(format_clock_time(ts), "2:05 PM")

    def test_parse_time_hmma(self):
        self.assertEqual(parse_time_hmma("2:05 PM"), 14 * 60 + 5)
        self.assertEqual(parse_time_hmma("12:00 AM"), 0)
        self.assertIsNone(parse_time_hmma("25:00 PM"))

    def test_format_duration(self):
        self.assertEqual(format_duration(185), "3m 5s")
        self.assertEqual(format_duration(42), "42s")


class TestBatchBuilder(unittest.TestCase):
    """Test batch formation."""

    def test_empty(self):
        self.assertEqual(build_batches([]), [])

    def test_gap_splits_and_short_flag(self):
        chunks = [_chunk(1, 0, 15, "a.mp4"), _chunk(2, 15, 30, "b.mp4"), _chunk(3, 200, 215, "c.mp4")]
        drafts = build_batches(chunks, max_gap_sec=120, target_batch_sec=900,
                               min_batch_sec=300, drop_incomplete_tail=False)
        self.assertEqual(len(drafts), 2)
        self.assertEqual([c.file_path for c in drafts[0].chunks], ["a.mp4", "b.mp4"])
        self.assertEqual((drafts[0].start_ts, drafts[0].end_ts), (0, 30))
        self.assertEqual([c.file_path for c in drafts[1].chunks], ["c.mp4"])
        self.assertEqual((drafts[1].start_ts, drafts[1].end_ts), (200, 215))
        self.assertTrue(all(d.too_short for d in drafts))

    def test_trailing_bucket_held_back(self):
        chunks = [_chunk(1, 0, 15, "a.mp4"), _chunk(2, 15, 30, "b.mp4"), _chunk(3, 200, 215, "c.mp4")]
        drafts = build_batches(chunks)
        self.assertEqual(len(drafts), 1)
        self.assertEqual(drafts[0].chunk_ids, [1, 2])

    def test_target_duration_closes_bucket(self):
        chunks = [_chunk(i, i * 60, i * 60 + 60) for i in range(20)]
        drafts = build_batches(chunks)
        # 15 x 60s fill the first batch; the remaining 5 minutes wait
        self.assertEqual(len(drafts), 1)
        self.assertEqual(drafts[0].duration, 900)
        self.assertFalse(drafts[0].too_short)

    def test_single_long_chunk(self):
        drafts = build_batches([_chunk(1, 0, 1200)])
        self.assertEqual(len(drafts), 1)
        self.assertEqual(drafts[0].chunk_ids, [1])

    def test_unsorted_input_and_disjoint_batches(self):
        chunks = [_chunk(i, i * 60, i * 60 + 60) for i in range(40)]
        chunks.reverse()
        drafts = build_batches(chunks, drop_incomplete_tail=False)
        seen = [cid for d in drafts for cid in d.chunk_ids]
        self.assertEqual(len(seen), len(set(seen)))
        self.assertEqual(sorted(seen), list(range(40)))
        for d in drafts:
            self.assertLessEqual(d.duration, 900)
            self.assertEqual(d.chunk_ids, sorted(d.chunk_ids))


class TestErrorCodes(unittest.TestCase):

    def test_retryable(self):
        self.assertTrue(is_retryable(ErrorCode.PROVIDER_TIMEOUT))
        self.assertTrue(is_retryable(ErrorCode.NETWORK_TRANSIENT))
        self.assertFalse(is_retryable(ErrorCode.RESPONSE_PARSE))
        self.assertNotIn(ErrorCode.UPLOAD_TIMEOUT, RETRYABLE_ERRORS)

    def test_analysis_error(self):
        call = LLMCall(provider="gemini", operation="transcribe", status="failure")
        err = AnalysisError(ErrorCode.UPLOAD_TIMEOUT, "not ACTIVE", calls=[call])
        self.assertEqual(str(err), "[ERR_UPLOAD_TIMEOUT] not ACTIVE")
        self.assertEqual(err.calls, [call])


class TestConfig(unittest.TestCase):
    """Test config loading and validation."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"

    def tearDown(self):
        self.tmp.cleanup()

    def _config(self):
        from recap.core.config import AppConfig
        return AppConfig(self.path)

    def test_defaults(self):
        config = self._config()
        self.assertEqual(config.provider_type, ProviderType.GEMINI)
        self.assertEqual(config.get('check_interval_sec'), 60)
        self.assertEqual(config.storage_quota_bytes, 5 * 1024 ** 3)

    def test_clamping(self):
        config = self._config()
        config.set('check_interval_sec', 1)
        self.assertEqual(config.get('check_interval_sec'), 10)
        config.set('frame_interval_sec', "abc")
        self.assertEqual(config.get('frame_interval_sec'), 30)

    def test_invalid_provider(self):
        config = self._config()
        config.set('provider_type', 'bogus')
        self.assertEqual(config.provider_type, ProviderType.GEMINI)
        config.set('provider_type', ProviderType.OLLAMA)
        self.assertEqual(config.provider_type, ProviderType.OLLAMA)

    def test_persist_and_reload(self):
        config = self._config()
        config.set('ollama_endpoint', 'http://127.0.0.1:11434/')
        config.set('categories', [{'name': 'Deep work'}, {'description': 'no name'}])
        reloaded = self._config()
        self.assertEqual(reloaded.get('ollama_endpoint'), 'http://127.0.0.1:11434')
        self.assertEqual([c['name'] for c in reloaded.categories], ['Deep work'])


class TestDatabase(unittest.TestCase):
    """Test SQLite database operations."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        from recap.core.db_sqlite import Database
        self.db = Database(Path(self.tmp.name) / "test.db")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def _completed_chunk(self, path, start, end):
        chunk = self.db.insert_chunk(path, start)
        self.db.complete_chunk(path, end)
        return chunk

    def test_chunk_lifecycle(self):
        chunk = self.db.insert_chunk("a.mp4", 1000)
        self.assertEqual(chunk.status, ChunkStatus.RECORDING)
        self.assertEqual(chunk.end_ts, 1060)
        self.assertEqual(self.db.fetch_unprocessed_chunks(0), [])

        self.db.complete_chunk("a.mp4", 1045)
        fetched = self.db.get_chunk(chunk.id)
        self.assertEqual(fetched.status, ChunkStatus.COMPLETED)
        self.assertEqual(fetched.end_ts, 1045)
        self.assertEqual([c.id for c in self.db.fetch_unprocessed_chunks(0)], [chunk.id])
        self.assertEqual(self.db.fetch_unprocessed_chunks(2000), [])

    def test_save_batch(self):
        a = self._completed_chunk("a.mp4", 0, 60)
        b = self._completed_chunk("b.mp4", 60, 120)
        self.assertIsNone(self.db.save_batch(0, 120, []))

        batch_id = self.db.save_batch(0, 120, [a.id, b.id])
        batch = self.db.get_batch(batch_id)
        self.assertEqual(batch.status, BatchStatus.PENDING)
        self.assertEqual([c.id for c in self.db.chunks_for_batch(batch_id)], [a.id, b.id])
        # batched chunks are no longer unprocessed
        self.assertEqual(self.db.fetch_unprocessed_chunks(0), [])

    def test_batched_chunk_delete_restricted(self):
        a = self._completed_chunk("a.mp4", 0, 60)
        self.db.save_batch(0, 60, [a.id])
        with self.assertRaises(sqlite3.IntegrityError):
            self.db.conn.execute("DELETE FROM chunks WHERE id = ?", (a.id,))
        self.db.conn.rollback()
        self.assertEqual(self.db.delete_chunk_by_path("a.mp4"), 0)

    def test_batch_status_and_reset(self):
        a = self._completed_chunk("a.mp4", 0, 60)
        batch_id = self.db.save_batch(0, 60, [a.id])
        reason = "[ERR_RESPONSE_PARSE] " + "x" * 5000
        self.db.mark_batch_failed(batch_id, reason)
        batch = self.db.get_batch(batch_id)
        self.assertEqual(batch.status, BatchStatus.FAILED)
        self.assertEqual(batch.reason, reason)
        self.assertEqual(self.db.batch_status_counts(), {BatchStatus.FAILED: 1})

        self.assertEqual(self.db.reset_batch_statuses([batch_id]), 1)
        batch = self.db.get_batch(batch_id)
        self.assertEqual(batch.status, BatchStatus.PENDING)
        self.assertIsNone(batch.reason)

    def test_observations(self):
        a = self._completed_chunk("a.mp4", 0, 60)
        batch_id = self.db.save_batch(0, 60, [a.id])
        self.db.save_observations(batch_id, [
            Observation(batch_id=batch_id, start_ts=0, end_ts=30, observation="Coding"),
            Observation(batch_id=batch_id, start_ts=30, end_ts=60, observation="Email"),
        ])
        self.assertEqual(len(self.db.fetch_observations(batch_id)), 2)
        self.assertEqual(len(self.db.fetch_observations_in_range(40, 100)), 1)
        self.assertEqual(self.db.delete_observations([batch_id]), 2)
        self.assertEqual(self.db.fetch_observations(batch_id), [])

    def test_replace_cards_in_range(self):
        a = self._completed_chunk("a.mp4", 0, 60)
        batch_id = self.db.save_batch(0, 60, [a.id])
        old = TimelineCard(start_ts=100, end_ts=200, title="Old", category="Work",
                           video_summary_path="/tmp/old.mp4")
        keep = TimelineCard(start_ts=5000, end_ts=6000, title="Later", category="Work")
        old_id = self.db.save_timeline_card(batch_id, old)
        keep_id = self.db.save_timeline_card(batch_id, keep)

        new = TimelineCard(start_ts=100, end_ts=400, title="New", category="Work",
                           metadata={'distractions': [{'start_ts': 150, 'end_ts': 160, 'title': 'X'}]})
        inserted, paths = self.db.replace_timeline_cards_in_range(0, 1000, [new], batch_id)

        self.assertEqual(paths, ["/tmp/old.mp4"])
        self.assertIsNone(self.db.get_timeline_card(old_id))
        self.assertIsNotNone(self.db.get_timeline_card(keep_id))
        card = self.db.get_timeline_card(inserted[0])
        self.assertEqual(card.title, "New")
        self.assertEqual(card.metadata['distractions'][0]['title'], 'X')
        self.assertEqual(card.day, logical_day(100)[0])

    def test_cards_for_day(self):
        day = "2024-05-11"
        start_ts, _ = day_bounds(day)
        self.db.save_timeline_card(None, TimelineCard(
            start_ts=start_ts + 3600, end_ts=start_ts + 4500, title="A", category="Work",
            video_summary_path="/tmp/a.mp4"))
        self.db.save_timeline_card(None, TimelineCard(
            start_ts=start_ts - 3600, end_ts=start_ts - 3000, title="B", category="Work"))
        self.assertEqual([c.title for c in self.db.fetch_timeline_cards_for_day(day)], ["A"])
        self.assertEqual(self.db.delete_timeline_cards_for_day(day), ["/tmp/a.mp4"])
        self.assertEqual(self.db.fetch_timeline_cards_for_day(day), [])
        self.assertEqual(self.db.count_timeline_cards(), 1)

    def test_llm_calls(self):
        calls = [
            LLMCall(provider="gemini", operation="transcribe", status="failure",
                    attempt=1, batch_id=7, error_code=ErrorCode.NETWORK_TRANSIENT),
            LLMCall(provider="gemini", operation="transcribe", status="success",
                    attempt=2, batch_id=7, response_body="y" * 30000),
        ]
        self.db.insert_llm_calls(calls)
        stored = self.db.fetch_llm_calls(7)
        self.assertEqual([c.attempt for c in stored], [1, 2])
        self.assertEqual(len(stored[1].response_body), 20000)
        self.assertEqual(self.db.fetch_recent_llm_calls(1)[0].attempt, 2)


class TestChunkStore(unittest.TestCase):
    """Test chunk registration and quota eviction."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        from recap.core.db_sqlite import Database
        from recap.core.chunk_store import ChunkStore
        self.db = Database(root / "test.db")
        self.recordings = root / "recordings"
        self.store = ChunkStore(self.db, recordings_dir=self.recordings,
                                quota_bytes=10 ** 12, background_purge=False)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def _record(self, start_ts, duration=60):
        path = self.store.next_file_path(datetime.fromtimestamp(start_ts))
        path.write_bytes(os.urandom(8192))
        chunk = self.store.register_chunk(path, start_ts=start_ts)
        self.store.mark_chunk_completed(path, end_ts=start_ts + duration)
        return chunk, path

    def test_next_file_path(self):
        path = self.store.next_file_path(datetime(2024, 5, 11, 14, 3, 7, 250000))
        self.assertEqual(path.name, "20240511_140307250.mp4")
        self.assertEqual(path.parent, self.recordings)

    def test_mark_failed_removes_row_and_file(self):
        path = self.recordings / "partial.mp4"
        path.write_bytes(b"partial")
        self.store.register_chunk(path, start_ts=1000)
        self.store.mark_chunk_failed(path)
        self.assertIsNone(self.db.get_chunk_by_path(str(path)))
        self.assertFalse(path.exists())

    def test_mark_failed_missing_file_is_logged_not_raised(self):
        path = self.recordings / "gone.mp4"
        self.store.register_chunk(path, start_ts=1000)
        self.store.mark_chunk_failed(path)
        self.assertIsNone(self.db.get_chunk_by_path(str(path)))

    def test_under_quota_evicts_nothing(self):
        self._record(1000)
        self.assertEqual(self.store.purge_if_needed(), [])

    def test_purge_never_evicts_batched_chunks(self):
        c1, p1 = self._record(1000)
        c2, p2 = self._record(1060)
        c3, p3 = self._record(1120)
        self.db.save_batch(1000, 1120, [c1.id, c2.id])

        self.store.quota_bytes = 0
        evicted = self.store.purge_if_needed()

        self.assertEqual([c.id for c in evicted], [c3.id])
        self.assertTrue(p1.exists())
        self.assertTrue(p2.exists())
        self.assertFalse(p3.exists())
        self.assertIsNotNone(self.db.get_chunk(c1.id))
        self.assertIsNone(self.db.get_chunk(c3.id))

    def test_purge_limit_per_invocation(self):
        for i in range(12):
            self._record(1000 + i * 60)
        self.store.quota_bytes = 0
        evicted = self.store.purge_if_needed()
        self.assertEqual(len(evicted), 10)
        # oldest first
        self.assertEqual(evicted[0].start_ts, 1000)
        self.assertEqual(len(self.db.fetch_unprocessed_chunks(0)), 2)

    def test_purge_spares_chunk_being_recorded(self):
        chunks = [self._record(1000 + i * 60)[0] for i in range(3)]
        self.db.save_batch(1000, 1180, [c.id for c in chunks])

        self.store.quota_bytes = 0
        live = self.recordings / "live.mp4"
        live.write_bytes(os.urandom(8192))
        chunk = self.store.register_chunk(live, start_ts=2000)

        self.assertIsNotNone(self.db.get_chunk(chunk.id))
        self.assertTrue(live.exists())

    def test_stale_recording_chunk_is_evicted(self):
        stale = self.recordings / "stale.mp4"
        stale.write_bytes(os.urandom(8192))
        self.store.register_chunk(stale, start_ts=500)

        self.store.quota_bytes = 0
        live = self.recordings / "live.mp4"
        live.write_bytes(os.urandom(8192))
        chunk = self.store.register_chunk(live, start_ts=2000)

        self.assertIsNone(self.db.get_chunk_by_path(str(stale)))
        self.assertFalse(stale.exists())
        self.assertIsNotNone(self.db.get_chunk(chunk.id))

    def test_background_purge_after_register(self):
        from recap.core.chunk_store import ChunkStore
        store = ChunkStore(self.db, recordings_dir=self.recordings,
                           quota_bytes=10 ** 12, background_purge=True)
        old, old_path = self._record(1000)
        store.quota_bytes = 0

        live = self.recordings / "live.mp4"
        live.write_bytes(os.urandom(8192))
        chunk = store.register_chunk(live, start_ts=2000)
        store._purge_thread.join(5)

        self.assertFalse(store._purge_thread.is_alive())
        self.assertIsNone(self.db.get_chunk(old.id))
        self.assertFalse(old_path.exists())
        self.assertIsNotNone(self.db.get_chunk(chunk.id))

    def test_mark_completed_unknown_path(self):
        self.assertFalse(self.store.mark_chunk_completed(self.recordings / "nope.mp4", end_ts=10))


if __name__ == "__main__":
    unittest.main()
