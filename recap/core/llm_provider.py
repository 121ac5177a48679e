"""
Provider contract for batch analysis.

Every provider answers two calls:
  transcribe(video)                          -> (observations, audit rows)
  synthesize_cards(observations, context)    -> (cards, audit rows)

Timestamps exchanged with providers are video-relative ("MM:SS" or
"HH:MM:SS" from the start of the stitched batch); anything before the batch
start carries a leading '-'.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from recap.core.constants import ErrorCode, ProviderType
from recap.core.error_codes import AnalysisError
from recap.core.models_sqlite import LLMCall
from recap.core.timeparse import parse_video_timestamp

logger = logging.getLogger(__name__)

# seconds a provider timestamp may run past the end of the video
_DURATION_TOLERANCE_SEC = 60


# ── Exchange types ────────────────────────────────────────────────────

@dataclass
class BatchVideo:
    batch_id: int
    path: Path
    start_ts: int                  # absolute start of the first chunk
    duration_sec: float
    mime_type: str = "video/mp4"


@dataclass
class ObservationDraft:
    start: str
    end: str
    description: str
    metadata: dict | None = None


@dataclass
class Distraction:
    start: str
    end: str
    title: str
    summary: str = ""


@dataclass
class ActivityCardDraft:
    start: str
    end: str
    title: str
    category: str
    summary: str = ""
    detailed_summary: str = ""
    subcategory: str = ""
    distractions: list[Distraction] = field(default_factory=list)
    app_sites: dict | None = None


@dataclass
class CategoryDescriptor:
    name: str
    description: str = ""
    is_idle: bool = False

    @classmethod
    def from_config(cls, entry: dict) -> "CategoryDescriptor":
        return cls(
            name=str(entry.get('name', '')).strip(),
            description=str(entry.get('description', '')),
            is_idle=bool(entry.get('is_idle', False)),
        )


@dataclass
class GenerationContext:
    """Everything synthesize_cards needs besides the window observations."""
    batch_id: int
    batch_observations: list[ObservationDraft]
    existing_cards: list[ActivityCardDraft]
    categories: list[CategoryDescriptor]
    duration_sec: float


class LLMProvider(Protocol):
    name: str

    def transcribe(self, video: BatchVideo) -> tuple[list[ObservationDraft], list[LLMCall]]:
        ...

    def synthesize_cards(self, observations: list[ObservationDraft],
                         context: GenerationContext) -> tuple[list[ActivityCardDraft], list[LLMCall]]:
        ...


# ── Shared parsing helpers ────────────────────────────────────────────

def filter_observations(drafts: list[ObservationDraft], duration_sec: float,
                        calls: list[LLMCall] | None = None) -> list[ObservationDraft]:
    """
    Drop observations with unparseable, inverted or out-of-video timestamps.
    Raises RESPONSE_PARSE if the provider returned segments but none survive.
    """
    limit = duration_sec + _DURATION_TOLERANCE_SEC if duration_sec > 0 else None
    kept = []
    for d in drafts:
        try:
            start = parse_video_timestamp(d.start)
            end = parse_video_timestamp(d.end)
        except ValueError:
            logger.warning("Dropping observation with bad timestamps %r-%r", d.start, d.end)
            continue
        if start < 0 or end < start or (limit is not None and start > limit):
            logger.warning("Dropping observation outside video: %s-%s", d.start, d.end)
            continue
        if not d.description.strip():
            continue
        kept.append(d)

    if drafts and not kept:
        raise AnalysisError(ErrorCode.RESPONSE_PARSE,
                            "No valid observations after filtering invalid timestamps",
                            calls=calls)
    return kept


def card_from_dict(item: dict) -> ActivityCardDraft:
    """Build a card draft from a provider JSON object (camelCase keys)."""
    distractions = [
        Distraction(
            start=str(d.get('startTime', '')),
            end=str(d.get('endTime', '')),
            title=str(d.get('title', '')),
            summary=str(d.get('summary', '')),
        )
        for d in (item.get('distractions') or [])
        if isinstance(d, dict)
    ]
    return ActivityCardDraft(
        start=str(item['startTime']),
        end=str(item['endTime']),
        title=str(item['title']),
        category=str(item.get('category') or ''),
        summary=str(item.get('summary') or ''),
        detailed_summary=str(item.get('detailedSummary') or ''),
        subcategory=str(item.get('subcategory') or ''),
        distractions=distractions,
        app_sites=item.get('appSites') if isinstance(item.get('appSites'), dict) else None,
    )


def card_to_dict(card: ActivityCardDraft) -> dict:
    data = {
        'startTime': card.start,
        'endTime': card.end,
        'category': card.category,
        'subcategory': card.subcategory,
        'title': card.title,
        'summary': card.summary,
        'detailedSummary': card.detailed_summary,
    }
    if card.distractions:
        data['distractions'] = [
            {'startTime': d.start, 'endTime': d.end, 'title': d.title, 'summary': d.summary}
            for d in card.distractions
        ]
    return data


def normalize_category(name: str, categories: list[CategoryDescriptor]) -> str:
    """Map a provider category onto the configured taxonomy (case-insensitive)."""
    if not categories:
        return name
    wanted = (name or '').strip().lower()
    for c in categories:
        if c.name.lower() == wanted:
            return c.name
    fallback = next((c.name for c in categories if not c.is_idle), categories[0].name)
    logger.debug("Unknown category %r, using %r", name, fallback)
    return fallback


# ── Factory ───────────────────────────────────────────────────────────

def create_provider(config, session=None, api_key: str | None = None) -> LLMProvider:
    """Instantiate the provider named by config.provider_type."""
    from recap.core.provider_gemini import GeminiProvider
    from recap.core.provider_ollama import OllamaProvider

    provider_type = config.get('provider_type')
    if provider_type == ProviderType.GEMINI:
        return GeminiProvider(
            model=config.get('gemini_model'),
            api_key=api_key,
            session=session,
        )
    if provider_type == ProviderType.OLLAMA:
        return OllamaProvider(
            endpoint=config.get('ollama_endpoint'),
            model=config.get('ollama_model'),
            frame_interval_sec=config.get('frame_interval_sec'),
            session=session,
        )
    raise AnalysisError(ErrorCode.NO_PROVIDER, f"Unknown provider type: {provider_type!r}")
