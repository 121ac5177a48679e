"""
Shared constants for ScreenRecap.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ScreenRecap"
APP_BUNDLE_ID = "com.local.screenrecap"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / "Library" / "Application Support" / APP_NAME
RECORDINGS_DIR = APP_SUPPORT_DIR / "recordings"
TIMELAPSE_DIR = APP_SUPPORT_DIR / "timelapses"
APP_CACHE_DIR = HOME / "Library" / "Caches" / APP_NAME
STITCH_CACHE_DIR = APP_CACHE_DIR / "stitched"
LOG_DIR = HOME / "Library" / "Logs" / APP_NAME
DB_PATH = APP_SUPPORT_DIR / "recap.sqlite"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE = "ScreenRecap:Gemini"
KEYCHAIN_ACCOUNT = "default"

# ── Chunk status values ───────────────────────────────────────────────
class ChunkStatus:
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"

# ── Batch status values ───────────────────────────────────────────────
class BatchStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_EMPTY = "failed_empty"
    SKIPPED_SHORT = "skipped_short"

TERMINAL_BATCH_STATUSES = {
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.FAILED_EMPTY,
    BatchStatus.SKIPPED_SHORT,
}

# ── LLM call audit ────────────────────────────────────────────────────
class CallStatus:
    SUCCESS = "success"
    FAILURE = "failure"

# ── Provider types ────────────────────────────────────────────────────
class ProviderType:
    GEMINI = "gemini"        # holistic: one upload, one call per capability
    OLLAMA = "ollama"        # decomposed: per-frame calls plus merge calls

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Transport
    PROVIDER_TIMEOUT = "ERR_PROVIDER_TIMEOUT"
    UPLOAD_TIMEOUT = "ERR_UPLOAD_TIMEOUT"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    PROVIDER_REQUEST_FAILED = "ERR_PROVIDER_REQUEST_FAILED"
    REMOTE_FILE_FAILED = "ERR_REMOTE_FILE_FAILED"

    # Content
    RESPONSE_PARSE = "ERR_RESPONSE_PARSE"

    # Pipeline
    VIDEO_STITCH = "ERR_VIDEO_STITCH"
    NO_PROVIDER = "ERR_NO_PROVIDER"
    NO_API_KEY = "ERR_NO_API_KEY"
    BATCH_NOT_FOUND = "ERR_BATCH_NOT_FOUND"

# Retried inside a single provider call (never across scheduler runs)
RETRYABLE_ERRORS = {
    ErrorCode.PROVIDER_TIMEOUT,
    ErrorCode.NETWORK_TRANSIENT,
}

# ── Batching defaults ─────────────────────────────────────────────────
MAX_GAP_SEC = 120              # chunks further apart never share a batch
TARGET_BATCH_SEC = 15 * 60     # soft cap on cumulative chunk duration
MIN_BATCH_SEC = 5 * 60         # shorter batches become skipped_short
ESTIMATED_CHUNK_SEC = 60       # end_ts placeholder while recording

# ── Scheduler defaults ────────────────────────────────────────────────
CHECK_INTERVAL_SEC = 60
MAX_LOOKBACK_SEC = 24 * 60 * 60
CONTEXT_WINDOW_SEC = 60 * 60   # sliding window for card synthesis
REPROCESS_POLL_SEC = 2.0

# ── Storage quota ─────────────────────────────────────────────────────
STORAGE_QUOTA_BYTES = 5 * 1024 * 1024 * 1024   # 5 GB
PURGE_BATCH_LIMIT = 10

# ── Logical day ───────────────────────────────────────────────────────
LOGICAL_DAY_START_HOUR = 4
DAY_FORMAT = "%Y-%m-%d"

# ── Timelapse ─────────────────────────────────────────────────────────
TIMELAPSE_SPEEDUP = 20
TIMELAPSE_FPS = 24

# ── Gemini ────────────────────────────────────────────────────────────
GEMINI_API_BASE = "https://generativelanguage.googleapis.com"
GEMINI_MODEL = "gemini-2.5-flash"
UPLOAD_POLL_SEC = 2.0
UPLOAD_MAX_WAIT_SEC = 5 * 60
GEMINI_REQUEST_TIMEOUT_SEC = 300

# ── Ollama ────────────────────────────────────────────────────────────
OLLAMA_ENDPOINT = "http://localhost:11434"
OLLAMA_MODEL = "qwen2.5vl:3b"
FRAME_INTERVAL_SEC = 30
FRAME_MAX_WIDTH = 1280
OLLAMA_REQUEST_TIMEOUT_SEC = 120

# Merge guards for the decomposed provider (minutes)
MERGE_MAX_EXISTING_MIN = 40
MERGE_MAX_GAP_MIN = 5
MERGE_MAX_COMBINED_MIN = 60

# ── HTTP retry ────────────────────────────────────────────────────────
MAX_HTTP_RETRIES = 3
HTTP_RETRY_BASE_DELAY = 2.0    # seconds, doubled each retry with jitter

# ── Categories ────────────────────────────────────────────────────────
DEFAULT_CATEGORIES = [
    {"name": "Work", "description": "Focused, productive work such as coding, writing or design."},
    {"name": "Personal", "description": "Personal errands, chats, shopping and life admin."},
    {"name": "Distraction", "description": "Entertainment, social feeds and aimless browsing."},
    {"name": "Idle", "description": "No meaningful activity on screen.", "is_idle": True},
]

# Truncation for persisted LLM audit payloads
MAX_ERROR_MESSAGE_LEN = 2000
MAX_AUDIT_BODY_LEN = 20000
