"""
Ollama provider (decomposed).
Samples frames from the batch video, describes each with a local vision model,
then folds the descriptions into observations and cards with text calls.
"""

import base64
import json
import time
import logging
from dataclasses import replace

import requests

from recap.core.constants import (
    ErrorCode, OLLAMA_ENDPOINT, OLLAMA_MODEL, FRAME_INTERVAL_SEC,
    OLLAMA_REQUEST_TIMEOUT_SEC, MAX_HTTP_RETRIES,
    MERGE_MAX_EXISTING_MIN, MERGE_MAX_GAP_MIN, MERGE_MAX_COMBINED_MIN,
)
from recap.core.error_codes import AnalysisError
from recap.core.llm_http import CallAudit, post_json, parse_json_text
from recap.core.llm_provider import (
    BatchVideo, ObservationDraft, ActivityCardDraft, GenerationContext,
    filter_observations, card_to_dict, normalize_category,
)
from recap.core.models_sqlite import LLMCall
from recap.core.timeparse import format_video_timestamp, parse_video_timestamp
from recap.core.video_processing import sample_frames

logger = logging.getLogger(__name__)

_FRAME_PROMPT = (
    "Describe what the user is doing in this screenshot in one or two sentences. "
    "Name the app or website and the specific task. Do not speculate."
)

_MERGE_FRAMES_PROMPT = """\
Below are timestamped snapshots of someone's screen, taken every {interval} seconds
over {duration} of activity.

{frames}

Group these snapshots into EXACTLY 2-5 coherent segments that cover the whole
{duration}. Absorb brief interruptions (< 2 minutes) into the surrounding segment.

Respond with JSON only:
{{"segments": [{{"start": "MM:SS", "end": "MM:SS", "description": "1-3 sentences"}}]}}
"""

_TITLE_SUMMARY_PROMPT = """\
You are summarising about 15 minutes of someone's computer activity.

Activity:
{observations}

Categories (choose exactly one name):
{categories}

Write a short specific title (5-10 words) and a 2-3 sentence factual summary in
first person without "I".

Respond with JSON only:
{{"title": "", "summary": "", "category": ""}}
"""

_SHOULD_MERGE_PROMPT = """\
Should these two consecutive activity cards be one card? Merge only when they
share the same goal or project.

Previous card: {previous}
New card: {new}

Respond with JSON only: {{"merge": true or false, "reason": ""}}
"""

_MERGE_CARDS_PROMPT = """\
Combine these two consecutive activity cards into one. Keep startTime
"{start}" and endTime "{end}". Rewrite the title (5-10 words) and summary
(2-3 sentences) to cover both.

Previous card: {previous}
New card: {new}

Respond with JSON only:
{{"title": "", "summary": "", "category": ""}}
"""


def _minutes_between(start: str, end: str) -> float:
    try:
        return (parse_video_timestamp(end) - parse_video_timestamp(start)) / 60.0
    except ValueError:
        return float('inf')


class OllamaProvider:
    """Decomposed provider backed by a local Ollama server."""

    name = "ollama"

    def __init__(self, endpoint: str | None = None, model: str | None = None,
                 frame_interval_sec: int | None = None,
                 session: requests.Session | None = None,
                 request_timeout: float = OLLAMA_REQUEST_TIMEOUT_SEC,
                 max_retries: int = MAX_HTTP_RETRIES,
                 frame_sampler=sample_frames, sleep=time.sleep):
        self.endpoint = (endpoint or OLLAMA_ENDPOINT).rstrip('/')
        self.model = model or OLLAMA_MODEL
        self.frame_interval_sec = frame_interval_sec or FRAME_INTERVAL_SEC
        self.session = session or requests.Session()
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self._frame_sampler = frame_sampler
        self._sleep = sleep

    # ── Transport ─────────────────────────────────────────────────────

    def _chat(self, prompt: str, audit: CallAudit, operation: str,
              images: list[bytes] | None = None, expect_json: bool = False) -> str:
        message = {"role": "user", "content": prompt}
        if images:
            message["images"] = [base64.b64encode(img).decode('ascii') for img in images]
        body = {
            "model": self.model,
            "messages": [message],
            "stream": False,
            "options": {"temperature": 0.3},
        }
        if expect_json:
            body["format"] = "json"
        result = post_json(self.session, f"{self.endpoint}/api/chat", body,
                           audit=audit, operation=operation,
                           timeout=self.request_timeout,
                           max_retries=self.max_retries, sleep=self._sleep)
        try:
            return result["message"]["content"]
        except (KeyError, TypeError):
            raise audit.fail(ErrorCode.RESPONSE_PARSE, f"{operation} response has no message")

    def _chat_json(self, prompt: str, audit: CallAudit, operation: str) -> dict:
        parsed = parse_json_text(self._chat(prompt, audit, operation, expect_json=True),
                                 audit, operation)
        if not isinstance(parsed, dict):
            raise audit.fail(ErrorCode.RESPONSE_PARSE, f"{operation} did not return a JSON object")
        return parsed

    # ── Transcription ─────────────────────────────────────────────────

    def _describe_frames(self, frames: list[tuple[int, bytes]],
                         audit: CallAudit) -> list[tuple[int, str]]:
        described = []
        for offset, image in frames:
            try:
                text = self._chat(_FRAME_PROMPT, audit, "describe_frame", images=[image])
            except AnalysisError as e:
                logger.warning("Frame at %ds skipped: %s", offset, e)
                continue
            text = text.strip()
            if text:
                described.append((offset, text))
        return described

    def _observations_from_frames(self, described: list[tuple[int, str]],
                                  duration_sec: float) -> list[ObservationDraft]:
        """One observation per frame, each lasting until the next frame."""
        observations = []
        for i, (offset, text) in enumerate(described):
            end = offset + self.frame_interval_sec
            if i + 1 < len(described):
                end = min(end, described[i + 1][0])
            if duration_sec > 0:
                end = min(end, duration_sec)
            end = max(end, offset + 1)
            observations.append(ObservationDraft(
                start=format_video_timestamp(offset),
                end=format_video_timestamp(end),
                description=text,
            ))
        return observations

    def _merge_frames(self, described: list[tuple[int, str]], duration_sec: float,
                      audit: CallAudit) -> list[ObservationDraft] | None:
        frames_text = "\n".join(f"[{format_video_timestamp(t)}] {d}" for t, d in described)
        prompt = _MERGE_FRAMES_PROMPT.format(
            interval=self.frame_interval_sec,
            duration=format_video_timestamp(duration_sec),
            frames=frames_text,
        )
        try:
            parsed = self._chat_json(prompt, audit, "merge_frames")
            segments = parsed.get("segments") or []
            drafts = [
                ObservationDraft(start=str(s["start"]), end=str(s["end"]),
                                 description=str(s["description"]))
                for s in segments
            ]
            return filter_observations(drafts, duration_sec) or None
        except (AnalysisError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Frame merge unusable, falling back to per-frame observations: %s", e)
            return None

    def transcribe(self, video: BatchVideo) -> tuple[list[ObservationDraft], list[LLMCall]]:
        audit = CallAudit(self.name, self.model, video.batch_id)
        frames = self._frame_sampler(video.path, video.duration_sec, self.frame_interval_sec)
        described = self._describe_frames(frames, audit)
        if not described:
            if frames:
                raise audit.fail(ErrorCode.PROVIDER_REQUEST_FAILED,
                                 f"All {len(frames)} frame descriptions failed")
            logger.info("Batch %s: no frames sampled", video.batch_id)
            return [], audit.calls

        observations = self._merge_frames(described, video.duration_sec, audit)
        if observations is None:
            observations = self._observations_from_frames(described, video.duration_sec)
        logger.info("Batch %s: %d frame(s) -> %d observation(s)",
                    video.batch_id, len(described), len(observations))
        return observations, audit.calls

    # ── Card synthesis ────────────────────────────────────────────────

    def _can_merge(self, previous: ActivityCardDraft, new: ActivityCardDraft) -> bool:
        if _minutes_between(previous.start, previous.end) >= MERGE_MAX_EXISTING_MIN:
            logger.debug("Skipping merge: previous card already long")
            return False
        if _minutes_between(previous.end, new.start) > MERGE_MAX_GAP_MIN:
            logger.debug("Skipping merge: gap too large")
            return False
        if _minutes_between(previous.start, new.end) > MERGE_MAX_COMBINED_MIN:
            logger.debug("Skipping merge: merged card would be too long")
            return False
        return True

    def synthesize_cards(self, observations: list[ObservationDraft],
                         context: GenerationContext) -> tuple[list[ActivityCardDraft], list[LLMCall]]:
        audit = CallAudit(self.name, self.model, context.batch_id)
        batch_obs = sorted(context.batch_observations or observations,
                           key=lambda o: parse_video_timestamp(o.start))
        if not batch_obs:
            return list(context.existing_cards), audit.calls

        categories = "\n".join(f"- {c.name}: {c.description}" for c in context.categories)
        parsed = self._chat_json(
            _TITLE_SUMMARY_PROMPT.format(
                observations="\n".join(f"[{o.start} - {o.end}]: {o.description}" for o in batch_obs),
                categories=categories,
            ),
            audit, "title_summary",
        )
        new_card = ActivityCardDraft(
            start=batch_obs[0].start,
            end=batch_obs[-1].end,
            title=str(parsed.get("title") or "Untitled activity"),
            summary=str(parsed.get("summary") or ""),
            category=normalize_category(str(parsed.get("category") or ""), context.categories),
        )

        cards = list(context.existing_cards)
        if not cards or not self._can_merge(cards[-1], new_card):
            cards.append(new_card)
            return cards, audit.calls

        previous = cards[-1]
        decision = self._chat_json(
            _SHOULD_MERGE_PROMPT.format(previous=json.dumps(card_to_dict(previous)),
                                        new=json.dumps(card_to_dict(new_card))),
            audit, "merge_check",
        )
        if not decision.get("merge"):
            cards.append(new_card)
            return cards, audit.calls

        merged = self._chat_json(
            _MERGE_CARDS_PROMPT.format(start=previous.start, end=new_card.end,
                                       previous=json.dumps(card_to_dict(previous)),
                                       new=json.dumps(card_to_dict(new_card))),
            audit, "merge_cards",
        )
        # the merged card keeps the previous card's details and distractions
        merged_card = replace(
            previous,
            end=new_card.end,
            title=str(merged.get("title") or previous.title),
            summary=str(merged.get("summary") or previous.summary),
            category=normalize_category(str(merged.get("category") or previous.category),
                                        context.categories),
            distractions=list(previous.distractions),
        )
        cards[-1] = merged_card
        return cards, audit.calls
