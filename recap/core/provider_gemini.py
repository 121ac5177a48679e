"""
Gemini provider (holistic).
Uploads the stitched batch video once via the resumable Files API, waits for
it to become ACTIVE, then issues one generateContent call per capability.
"""

import json
import time
import logging
import threading

import requests

from recap.core.constants import (
    ErrorCode, GEMINI_API_BASE, GEMINI_MODEL, UPLOAD_POLL_SEC,
    UPLOAD_MAX_WAIT_SEC, GEMINI_REQUEST_TIMEOUT_SEC, MAX_HTTP_RETRIES,
)
from recap.core.error_codes import AnalysisError
from recap.core.llm_http import CallAudit, send_with_retry, post_json, parse_json_text
from recap.core.llm_provider import (
    BatchVideo, ObservationDraft, ActivityCardDraft, GenerationContext,
    filter_observations, card_from_dict, card_to_dict, normalize_category,
)
from recap.core.models_sqlite import LLMCall
from recap.core.security_utils import keychain_get_api_key
from recap.core.timeparse import format_video_timestamp

logger = logging.getLogger(__name__)

_TRANSCRIBE_PROMPT = """\
Transcribe this screen recording of someone's computer usage into a small
number of meaningful activity segments.

The video is exactly {duration} long. ALL timestamps MUST be within 00:00 and {duration}.

Aim for 3-5 segments per 15 minutes of video. Group by purpose, not by
platform, and fold brief interruptions into the surrounding segment. Only
start a new segment when the user switches to a different purpose for more
than 2-3 minutes.

Respond with a JSON array:
[{{"startTimestamp": "MM:SS", "endTimestamp": "MM:SS", "description": "1-3 sentences about what the user accomplished"}}]
"""

_CARDS_PROMPT = """\
You are turning a user's activity log into timeline cards.

Prefer long, cohesive cards (ideally 30-60 minutes). Extend the last previous
card when the new observations continue its theme: keep its startTime
unchanged, move its endTime and rewrite its summaries to cover the whole
span. Start a new card only on a real change of purpose.

Titles are short and specific (5-10 words). Summaries are 2-3 factual
sentences in first person without "I". detailedSummary is a minute-level
breakdown. Record brief unrelated detours as distractions.

All times are relative to the start of the current video ("MM:SS"). Times
before the video start are negative ("-12:30").

Categories (use exactly one name per card):
{categories}

Previous cards:
{existing_cards}

Observations:
{observations}

Respond with a JSON array of cards:
[{{"startTime": "MM:SS", "endTime": "MM:SS", "category": "", "subcategory": "", "title": "", "summary": "", "detailedSummary": "", "distractions": [{{"startTime": "MM:SS", "endTime": "MM:SS", "title": "", "summary": ""}}]}}]
"""

_TRANSCRIBE_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "startTimestamp": {"type": "STRING"},
            "endTimestamp": {"type": "STRING"},
            "description": {"type": "STRING"},
        },
        "required": ["startTimestamp", "endTimestamp", "description"],
    },
}


def format_observation_lines(observations: list[ObservationDraft]) -> str:
    return "\n".join(f"[{o.start} - {o.end}]: {o.description}" for o in observations)


def format_category_lines(context: GenerationContext) -> str:
    lines = []
    for c in context.categories:
        line = f"- {c.name}"
        if c.description:
            line += f": {c.description}"
        if c.is_idle:
            line += " (use when nothing happens on screen)"
        lines.append(line)
    return "\n".join(lines) or "- Work"


class GeminiProvider:
    """Holistic provider backed by the Gemini REST API."""

    name = "gemini"

    def __init__(self, model: str | None = None, api_key: str | None = None,
                 session: requests.Session | None = None,
                 api_base: str = GEMINI_API_BASE,
                 poll_interval: float = UPLOAD_POLL_SEC,
                 max_wait: float = UPLOAD_MAX_WAIT_SEC,
                 request_timeout: float = GEMINI_REQUEST_TIMEOUT_SEC,
                 max_retries: int = MAX_HTTP_RETRIES,
                 sleep=time.sleep, clock=time.monotonic):
        self.model = model or GEMINI_MODEL
        self._api_key = api_key
        self.session = session or requests.Session()
        self.api_base = api_base.rstrip('/')
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self._sleep = sleep
        self._clock = clock
        self._cancel = threading.Event()

    def cancel(self):
        """Abort the upload poll in progress; the next upload starts clean."""
        self._cancel.set()

    # ── Auth ──────────────────────────────────────────────────────────

    def _headers(self, extra: dict | None = None) -> dict:
        if not self._api_key:
            self._api_key = keychain_get_api_key()
        if not self._api_key:
            raise AnalysisError(ErrorCode.NO_API_KEY, "Gemini API key not found in Keychain")
        headers = {"x-goog-api-key": self._api_key}
        headers.update(extra or {})
        return headers

    # ── Upload ────────────────────────────────────────────────────────

    def upload_video(self, video: BatchVideo, audit: CallAudit) -> str:
        """
        Three-phase resumable upload. Returns the file URI once ACTIVE.
        Raises UPLOAD_TIMEOUT or REMOTE_FILE_FAILED.
        """
        # a cancel only applies to the upload it interrupted
        self._cancel.clear()
        size = video.path.stat().st_size

        # 1. start the session
        start_resp = send_with_retry(
            self.session, "POST", f"{self.api_base}/upload/v1beta/files",
            audit=audit, operation="upload.start", timeout=60,
            json_body={"file": {"display_name": f"batch_{video.batch_id}"}},
            headers=self._headers({
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(size),
                "X-Goog-Upload-Header-Content-Type": video.mime_type,
            }),
            max_retries=self.max_retries, sleep=self._sleep,
        )
        upload_url = start_resp.headers.get("X-Goog-Upload-URL") or start_resp.headers.get("x-goog-upload-url")
        if not upload_url:
            raise audit.fail(ErrorCode.PROVIDER_REQUEST_FAILED,
                             "Upload session started without an upload URL")

        # 2. stream the bytes and finalize
        with open(video.path, 'rb') as f:
            data = f.read()
        finalize_resp = send_with_retry(
            self.session, "POST", upload_url,
            audit=audit, operation="upload.finalize", timeout=self.request_timeout,
            data=data,
            headers=self._headers({
                "Content-Length": str(size),
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            }),
            max_retries=self.max_retries, sleep=self._sleep,
        )
        try:
            file_info = finalize_resp.json()["file"]
            file_uri, file_name = file_info["uri"], file_info["name"]
        except (ValueError, KeyError, TypeError):
            raise audit.fail(ErrorCode.RESPONSE_PARSE, "Failed to parse upload response")
        logger.info("Uploaded batch %s video (%d bytes) as %s", video.batch_id, size, file_name)

        # 3. wait for processing
        self._await_active(file_name, file_info.get("state"), audit)
        return file_uri

    def _file_state(self, file_name: str) -> str:
        try:
            resp = self.session.get(f"{self.api_base}/v1beta/{file_name}",
                                    headers=self._headers(), timeout=30)
            if resp.status_code == 200:
                return resp.json().get("state", "UNKNOWN")
            logger.warning("File status for %s returned %d", file_name, resp.status_code)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning("File status check for %s failed: %s", file_name, e)
        return "UNKNOWN"

    def _await_active(self, file_name: str, state: str | None, audit: CallAudit):
        deadline = self._clock() + self.max_wait
        while True:
            if state is None:
                state = self._file_state(file_name)
            if state == "ACTIVE":
                return
            if state == "FAILED":
                raise audit.fail(ErrorCode.REMOTE_FILE_FAILED,
                                 f"Remote processing of {file_name} failed")
            if self._clock() >= deadline:
                raise audit.fail(ErrorCode.UPLOAD_TIMEOUT,
                                 f"Upload of {file_name} timed out: not ACTIVE after {self.max_wait:.0f}s")
            if self._cancel.wait(self.poll_interval):
                raise audit.fail(ErrorCode.UPLOAD_TIMEOUT,
                                 f"Upload of {file_name} cancelled while waiting")
            state = None

    # ── generateContent ───────────────────────────────────────────────

    def _generate(self, parts: list[dict], audit: CallAudit, operation: str,
                  schema: dict | None = None) -> str:
        generation_config = {
            "temperature": 0.3,
            "responseMimeType": "application/json",
        }
        if schema:
            generation_config["responseSchema"] = schema
        body = {
            "contents": [{"parts": parts}],
            "generationConfig": generation_config,
        }
        url = f"{self.api_base}/v1beta/models/{self.model}:generateContent"
        result = post_json(self.session, url, body, audit=audit, operation=operation,
                           timeout=self.request_timeout, headers=self._headers(),
                           max_retries=self.max_retries, sleep=self._sleep)
        try:
            return result["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise audit.fail(ErrorCode.RESPONSE_PARSE,
                             f"{operation} response has no candidate text")

    # ── Provider contract ─────────────────────────────────────────────

    def transcribe(self, video: BatchVideo) -> tuple[list[ObservationDraft], list[LLMCall]]:
        audit = CallAudit(self.name, self.model, video.batch_id)
        file_uri = self.upload_video(video, audit)

        prompt = _TRANSCRIBE_PROMPT.format(duration=format_video_timestamp(video.duration_sec))
        text = self._generate(
            [{"file_data": {"mime_type": video.mime_type, "file_uri": file_uri}},
             {"text": prompt}],
            audit, "transcribe", schema=_TRANSCRIBE_SCHEMA,
        )
        items = parse_json_text(text, audit, "transcribe")
        if not isinstance(items, list):
            raise audit.fail(ErrorCode.RESPONSE_PARSE, "transcribe did not return a JSON array")

        drafts = []
        for item in items:
            try:
                drafts.append(ObservationDraft(
                    start=str(item["startTimestamp"]),
                    end=str(item["endTimestamp"]),
                    description=str(item["description"]),
                ))
            except (KeyError, TypeError):
                logger.warning("Skipping malformed transcription segment: %r", item)
        observations = filter_observations(drafts, video.duration_sec, audit.calls)
        logger.info("Batch %s: %d observation(s) from Gemini", video.batch_id, len(observations))
        return observations, audit.calls

    def synthesize_cards(self, observations: list[ObservationDraft],
                         context: GenerationContext) -> tuple[list[ActivityCardDraft], list[LLMCall]]:
        audit = CallAudit(self.name, self.model, context.batch_id)
        prompt = _CARDS_PROMPT.format(
            categories=format_category_lines(context),
            existing_cards=json.dumps([card_to_dict(c) for c in context.existing_cards], indent=2),
            observations=format_observation_lines(observations),
        )
        text = self._generate([{"text": prompt}], audit, "generate_cards")
        items = parse_json_text(text, audit, "generate_cards")
        if not isinstance(items, list):
            raise audit.fail(ErrorCode.RESPONSE_PARSE, "generate_cards did not return a JSON array")

        cards = []
        for item in items:
            try:
                card = card_from_dict(item)
            except (KeyError, TypeError):
                logger.warning("Skipping malformed card: %r", item)
                continue
            card.category = normalize_category(card.category, context.categories)
            cards.append(card)
        if items and not cards:
            raise audit.fail(ErrorCode.RESPONSE_PARSE, "No usable cards in generate_cards response")
        return cards, audit.calls
