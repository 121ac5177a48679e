"""
SQLite data models (plain dataclasses) for ScreenRecap.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Chunk:
    id: int
    start_ts: int
    end_ts: int
    file_path: str
    status: str = "recording"

    @property
    def duration(self) -> int:
        return max(0, self.end_ts - self.start_ts)


@dataclass
class AnalysisBatch:
    id: int
    start_ts: int
    end_ts: int
    status: str = "pending"
    reason: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Observation:
    batch_id: int
    start_ts: int                    # absolute unix seconds
    end_ts: int
    observation: str
    metadata: Optional[str] = None
    llm_model: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class TimelineCard:
    start_ts: int                    # absolute unix seconds
    end_ts: int
    title: str
    category: str
    summary: str = ""
    detailed_summary: str = ""
    subcategory: str = ""
    day: str = ""
    metadata: dict = field(default_factory=dict)   # distractions / app_sites
    video_summary_path: Optional[str] = None
    batch_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class LLMCall:
    """One request/response attempt against a provider. Append-only."""
    provider: str
    operation: str
    status: str                      # "success" | "failure"
    attempt: int = 1
    batch_id: Optional[int] = None
    call_group_id: Optional[str] = None
    model: Optional[str] = None
    latency_ms: Optional[int] = None
    http_status: Optional[int] = None
    request_method: Optional[str] = None
    request_url: Optional[str] = None
    request_body: Optional[str] = None
    response_body: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None
