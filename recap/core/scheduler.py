"""
Analysis scheduler and per-batch worker.
A timer thread triggers runs; each run batches unprocessed chunks and analyses
the new batches one at a time through the configured provider.
"""

import json
import time
import logging
import threading
from pathlib import Path
from typing import Optional

from recap.core.constants import (
    BatchStatus, ErrorCode, CHECK_INTERVAL_SEC, MAX_LOOKBACK_SEC, MAX_GAP_SEC,
    TARGET_BATCH_SEC, MIN_BATCH_SEC, CONTEXT_WINDOW_SEC, DEFAULT_CATEGORIES,
    STITCH_CACHE_DIR, TIMELAPSE_DIR,
)
from recap.core.db_sqlite import Database
from recap.core.models_sqlite import Observation, TimelineCard, LLMCall
from recap.core.error_codes import AnalysisError
from recap.core.batching import build_batches
from recap.core.llm_provider import (
    LLMProvider, BatchVideo, ObservationDraft, ActivityCardDraft, Distraction,
    CategoryDescriptor, GenerationContext,
)
from recap.core.timeparse import (
    video_to_absolute, absolute_to_video, logical_day,
)
from recap.core.video_processing import (
    stitch_chunks, get_video_duration, render_timelapse, timelapse_path_for,
)
from recap.core.cleanup import remove_files

logger = logging.getLogger(__name__)


# ── Time-base conversion ──────────────────────────────────────────────

def observation_from_draft(draft: ObservationDraft, batch_id: int, base_ts: int,
                           model: str | None = None) -> Observation:
    return Observation(
        batch_id=batch_id,
        start_ts=video_to_absolute(draft.start, base_ts),
        end_ts=video_to_absolute(draft.end, base_ts),
        observation=draft.description,
        metadata=json.dumps(draft.metadata) if draft.metadata else None,
        llm_model=model,
    )


def observation_to_draft(obs: Observation, base_ts: int) -> ObservationDraft:
    return ObservationDraft(
        start=absolute_to_video(obs.start_ts, base_ts),
        end=absolute_to_video(obs.end_ts, base_ts),
        description=obs.observation,
    )


def card_to_draft(card: TimelineCard, base_ts: int) -> ActivityCardDraft:
    distractions = [
        Distraction(
            start=absolute_to_video(d['start_ts'], base_ts),
            end=absolute_to_video(d['end_ts'], base_ts),
            title=d.get('title', ''),
            summary=d.get('summary', ''),
        )
        for d in card.metadata.get('distractions', [])
        if 'start_ts' in d and 'end_ts' in d
    ]
    return ActivityCardDraft(
        start=absolute_to_video(card.start_ts, base_ts),
        end=absolute_to_video(card.end_ts, base_ts),
        title=card.title,
        category=card.category,
        summary=card.summary,
        detailed_summary=card.detailed_summary,
        subcategory=card.subcategory,
        distractions=distractions,
        app_sites=card.metadata.get('app_sites'),
    )


def card_from_draft(draft: ActivityCardDraft, base_ts: int,
                    batch_id: int) -> Optional[TimelineCard]:
    """Absolute-time card, or None if the draft's timestamps are unusable."""
    try:
        start_ts = video_to_absolute(draft.start, base_ts)
        end_ts = video_to_absolute(draft.end, base_ts)
    except ValueError:
        logger.warning("Dropping card %r with bad timestamps %r-%r",
                       draft.title, draft.start, draft.end)
        return None
    if end_ts < start_ts:
        logger.warning("Dropping card %r ending before it starts", draft.title)
        return None

    metadata = {}
    distractions = []
    for d in draft.distractions:
        try:
            distractions.append({
                'start_ts': video_to_absolute(d.start, base_ts),
                'end_ts': video_to_absolute(d.end, base_ts),
                'title': d.title,
                'summary': d.summary,
            })
        except ValueError:
            continue
    if distractions:
        metadata['distractions'] = distractions
    if draft.app_sites:
        metadata['app_sites'] = draft.app_sites

    return TimelineCard(
        start_ts=start_ts,
        end_ts=end_ts,
        title=draft.title,
        category=draft.category,
        summary=draft.summary,
        detailed_summary=draft.detailed_summary,
        subcategory=draft.subcategory,
        day=logical_day(start_ts)[0],
        metadata=metadata,
        batch_id=batch_id,
    )


class AnalysisScheduler:
    """
    Turns recorded chunks into batches and analyses them.
    Only one run is in flight at a time; terminal batches are never retried.
    """

    def __init__(self, db: Database, provider: LLMProvider, config=None,
                 stitcher=stitch_chunks, duration_reader=get_video_duration,
                 timelapse_renderer=render_timelapse,
                 timelapse_root: Path | None = None):
        self.db = db
        self.provider = provider
        self.config = config if config is not None else {}
        self._stitch = stitcher
        self._read_duration = duration_reader
        self._render_timelapse = timelapse_renderer
        self.timelapse_root = Path(timelapse_root or TIMELAPSE_DIR)

        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._timer_thread: Optional[threading.Thread] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def check_interval_sec(self) -> float:
        return self.config.get('check_interval_sec', CHECK_INTERVAL_SEC)

    @property
    def max_lookback_sec(self) -> int:
        return self.config.get('max_lookback_sec', MAX_LOOKBACK_SEC)

    @property
    def min_batch_sec(self) -> int:
        return self.config.get('min_batch_sec', MIN_BATCH_SEC)

    @property
    def generate_timelapses(self) -> bool:
        return self.config.get('generate_timelapses', True)

    @property
    def categories(self) -> list[CategoryDescriptor]:
        entries = self.config.get('categories') or DEFAULT_CATEGORIES
        return [CategoryDescriptor.from_config(e) for e in entries]

    # ── Timer ─────────────────────────────────────────────────────────

    def start(self):
        """Start the timer thread; it triggers a run now and every check interval."""
        if self._timer_thread and self._timer_thread.is_alive():
            return
        self._stop_event.clear()
        self._timer_thread = threading.Thread(target=self._timer_loop, daemon=True,
                                              name="analysis-timer")
        self._timer_thread.start()
        logger.info("Analysis scheduler started (every %ss)", self.check_interval_sec)

    def stop(self, timeout: float = 5.0):
        """Stop the timer and abort any upload wait in progress."""
        self._stop_event.set()
        self.cancel_inflight()
        logger.info("Analysis scheduler stopping")
        if self._timer_thread and self._timer_thread is not threading.current_thread():
            self._timer_thread.join(timeout)

    def cancel_inflight(self):
        """Ask the provider to abandon its current upload poll, if it has one."""
        cancel = getattr(self.provider, 'cancel', None)
        if callable(cancel):
            cancel()

    def is_running(self) -> bool:
        return bool(self._timer_thread and self._timer_thread.is_alive())

    def _timer_loop(self):
        while not self._stop_event.is_set():
            self.trigger_now()
            if self._stop_event.wait(self.check_interval_sec):
                break

    def trigger_now(self) -> bool:
        """Start a run on a worker thread unless one is already in flight."""
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Analysis run already in flight, skipping trigger")
            return False
        worker = threading.Thread(target=self._run_and_release, daemon=True,
                                  name="analysis-run")
        worker.start()
        return True

    def _run_and_release(self):
        try:
            self.run_once()
        except Exception as e:
            logger.error("Analysis run error: %s", e, exc_info=True)
        finally:
            self._run_lock.release()

    # ── Run ───────────────────────────────────────────────────────────

    def run_once(self, now: int | None = None) -> list[int]:
        """Batch unprocessed chunks and analyse each new batch. Returns batch ids."""
        now = int(now if now is not None else time.time())
        chunks = self.db.fetch_unprocessed_chunks(now - self.max_lookback_sec)
        drafts = build_batches(
            chunks,
            max_gap_sec=self.config.get('max_gap_sec', MAX_GAP_SEC),
            target_batch_sec=self.config.get('target_batch_sec', TARGET_BATCH_SEC),
            min_batch_sec=self.min_batch_sec,
        )
        if not drafts:
            logger.debug("No batches ready (%d unprocessed chunk(s))", len(chunks))
            return []

        batch_ids = []
        for draft in drafts:
            batch_id = self.db.save_batch(draft.start_ts, draft.end_ts, draft.chunk_ids)
            if batch_id is not None:
                batch_ids.append(batch_id)
        logger.info("Created %d batch(es) from %d chunk(s)", len(batch_ids), len(chunks))

        for batch_id in batch_ids:
            if self._stop_event.is_set():
                break
            self.process_batch(batch_id)
        return batch_ids

    def submit_batch(self, batch_id: int) -> threading.Thread:
        """Run process_batch on its own worker thread."""
        worker = threading.Thread(target=self.process_batch, args=(batch_id,),
                                  daemon=True, name=f"analysis-batch-{batch_id}")
        worker.start()
        return worker

    # ── Per-batch pipeline ────────────────────────────────────────────

    def process_batch(self, batch_id: int) -> Optional[str]:
        """
        Drive one batch to a terminal status. Never raises.
        Returns the final status, or None if the batch does not exist.
        """
        batch = self.db.get_batch(batch_id)
        if batch is None:
            logger.warning("process_batch: batch %d not found", batch_id)
            return None

        calls: list[LLMCall] = []
        status = BatchStatus.FAILED
        try:
            status = self._analyze(batch_id, batch.end_ts, calls)
        except AnalysisError as e:
            calls.extend(c for c in e.calls if c not in calls)
            logger.error("Batch %d failed: %s", batch_id, e)
            self.db.mark_batch_failed(batch_id, str(e))
        except Exception as e:
            logger.error("Unexpected error processing batch %d: %s", batch_id, e, exc_info=True)
            self.db.mark_batch_failed(batch_id, str(e) or type(e).__name__)
        finally:
            self._save_calls(batch_id, calls)
        return status

    def _save_calls(self, batch_id: int, calls: list[LLMCall]):
        for call in calls:
            call.batch_id = batch_id
        try:
            self.db.insert_llm_calls(calls)
        except Exception as e:
            logger.error("Failed to persist %d LLM call(s) for batch %d: %s",
                         len(calls), batch_id, e)

    def _analyze(self, batch_id: int, batch_end_ts: int, calls: list[LLMCall]) -> str:
        chunks = self.db.chunks_for_batch(batch_id)
        if not chunks:
            self.db.update_batch_status(batch_id, BatchStatus.FAILED_EMPTY, "No chunks in batch")
            return BatchStatus.FAILED_EMPTY

        duration = sum(c.duration for c in chunks)
        if duration < self.min_batch_sec:
            self.db.update_batch_status(
                batch_id, BatchStatus.SKIPPED_SHORT,
                f"Recorded {duration}s, below minimum {self.min_batch_sec}s",
            )
            return BatchStatus.SKIPPED_SHORT

        self.db.update_batch_status(batch_id, BatchStatus.PROCESSING)
        base_ts = chunks[0].start_ts

        # ── Transcribe ──
        chunk_paths = [c.file_path for c in chunks]
        video_path = Path(self._stitch(chunk_paths))
        try:
            video_duration = self._read_duration(video_path) or float(duration)
            video = BatchVideo(batch_id=batch_id, path=video_path, start_ts=base_ts,
                               duration_sec=video_duration)
            drafts, transcribe_calls = self.provider.transcribe(video)
            calls.extend(transcribe_calls)
        finally:
            if str(video_path) not in chunk_paths:
                remove_files([video_path])

        model = getattr(self.provider, 'model', None)
        observations = []
        for d in drafts:
            try:
                observations.append(observation_from_draft(d, batch_id, base_ts, model))
            except ValueError:
                logger.warning("Batch %d: dropping observation %r-%r", batch_id, d.start, d.end)
        self.db.save_observations(batch_id, observations)

        if not observations:
            logger.info("Batch %d: no observations, completing without cards", batch_id)
            self.db.update_batch_status(batch_id, BatchStatus.COMPLETED)
            return BatchStatus.COMPLETED

        # ── Synthesize cards over the sliding window ──
        window_start = batch_end_ts - CONTEXT_WINDOW_SEC
        existing = self.db.fetch_timeline_cards_in_range(window_start, batch_end_ts)
        window_obs = self.db.fetch_observations_in_range(window_start, batch_end_ts)
        context = GenerationContext(
            batch_id=batch_id,
            batch_observations=[observation_to_draft(o, base_ts) for o in observations],
            existing_cards=[card_to_draft(c, base_ts) for c in existing],
            categories=self.categories,
            duration_sec=video_duration,
        )
        card_drafts, card_calls = self.provider.synthesize_cards(
            [observation_to_draft(o, base_ts) for o in window_obs], context,
        )
        calls.extend(card_calls)

        cards = [c for c in (card_from_draft(d, base_ts, batch_id) for d in card_drafts) if c]
        if card_drafts and not cards:
            raise AnalysisError(ErrorCode.RESPONSE_PARSE, "No cards with usable timestamps")

        card_ids, replaced_videos = self.db.replace_timeline_cards_in_range(
            window_start, batch_end_ts, cards, batch_id,
        )
        remove_files(replaced_videos)
        self.db.update_batch_status(batch_id, BatchStatus.COMPLETED)
        logger.info("Batch %d completed: %d observation(s), %d card(s)",
                    batch_id, len(observations), len(card_ids))

        if self.generate_timelapses and card_ids:
            threading.Thread(target=self._generate_timelapses, args=(card_ids,),
                             daemon=True, name=f"timelapse-{batch_id}").start()
        return BatchStatus.COMPLETED

    # ── Timelapses ────────────────────────────────────────────────────

    def _generate_timelapses(self, card_ids: list[int]):
        for card_id in card_ids:
            try:
                self.generate_timelapse(card_id)
            except Exception as e:
                logger.warning("Timelapse for card %d failed: %s", card_id, e)

    def generate_timelapse(self, card_id: int) -> Optional[Path]:
        card = self.db.get_timeline_card(card_id)
        if card is None:
            return None
        chunks = self.db.fetch_chunks_in_time_range(card.start_ts, card.end_ts)
        if not chunks:
            logger.info("No chunks on record for card %d, skipping timelapse", card_id)
            return None

        chunk_paths = [c.file_path for c in chunks]
        source = Path(self._stitch(chunk_paths, STITCH_CACHE_DIR / f"timelapse_src_{card_id}.mp4"))
        try:
            output = timelapse_path_for(card_id, card.start_ts, self.timelapse_root)
            try:
                self._render_timelapse(source, output)
            except Exception:
                remove_files([output])
                raise
        finally:
            if str(source) not in chunk_paths:
                remove_files([source])

        self.db.update_timeline_card_video(card_id, str(output))
        return output
