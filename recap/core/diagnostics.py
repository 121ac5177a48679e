"""
Diagnostics: tool version detection and pipeline health.
"""

import logging

from recap.core.security_utils import run_subprocess_capture
from recap.core.chunk_store import allocated_bytes
from recap.core.constants import RECORDINGS_DIR

logger = logging.getLogger(__name__)


def _tool_version(binary: str) -> str:
    """Return the first line of `<binary> -version`, or an error message."""
    try:
        result = run_subprocess_capture([binary, "-version"], timeout=10)
        if result.returncode == 0:
            return result.stdout.strip().splitlines()[0]
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def get_ffmpeg_version() -> str:
    return _tool_version("ffmpeg")


def get_ffprobe_version() -> str:
    return _tool_version("ffprobe")


def get_diagnostics(db=None, recordings_dir=None, recent_calls: int = 10) -> dict:
    """Gather all diagnostic information."""
    info = {
        "ffmpeg_version": get_ffmpeg_version(),
        "ffprobe_version": get_ffprobe_version(),
        "recordings_bytes": allocated_bytes(recordings_dir or RECORDINGS_DIR),
    }
    if db is not None:
        info["batch_status_counts"] = db.batch_status_counts()
        info["recent_llm_calls"] = [
            {
                "id": c.id,
                "batch_id": c.batch_id,
                "provider": c.provider,
                "operation": c.operation,
                "status": c.status,
                "attempt": c.attempt,
                "latency_ms": c.latency_ms,
                "error_code": c.error_code,
            }
            for c in db.fetch_recent_llm_calls(recent_calls)
        ]
    return info
