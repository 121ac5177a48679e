"""
Time conversions used across the pipeline.

Providers speak video-relative time ("MM:SS" from the start of the stitched
batch video); the database stores absolute unix seconds. Logical days start
at LOGICAL_DAY_START_HOUR local time so a late-night session stays in one day.
"""

import re
from datetime import datetime, timedelta

from recap.core.constants import LOGICAL_DAY_START_HOUR, DAY_FORMAT

_VIDEO_TS_RE = re.compile(r'^(-)?(\d+):(\d{1,2})(?::(\d{1,2}))?$')
_CLOCK_RE = re.compile(r'^(\d{1,2}):(\d{2})\s*([AP]M)$')


# ── Video-relative timestamps ─────────────────────────────────────────

def parse_video_timestamp(timestamp: str) -> int:
    """
    Convert "MM:SS" or "HH:MM:SS" (optionally prefixed with '-') to seconds.
    Raises ValueError on anything else.
    """
    m = _VIDEO_TS_RE.match(str(timestamp).strip())
    if not m:
        raise ValueError(f"Invalid video timestamp: {timestamp!r}")

    sign, first, second, third = m.groups()
    if third is None:
        minutes, seconds = int(first), int(second)
        total = minutes * 60 + seconds
    else:
        hours, minutes, seconds = int(first), int(second), int(third)
        if minutes >= 60:
            raise ValueError(f"Invalid video timestamp: {timestamp!r}")
        total = hours * 3600 + minutes * 60 + seconds

    if seconds >= 60:
        raise ValueError(f"Invalid video timestamp: {timestamp!r}")
    return -total if sign else total


def format_video_timestamp(seconds: int | float) -> str:
    """Inverse of parse_video_timestamp: "MM:SS" below an hour, else "HH:MM:SS"."""
    seconds = int(round(seconds))
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{sign}{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{sign}{minutes:02d}:{secs:02d}"


def video_to_absolute(timestamp: str, batch_start_ts: int) -> int:
    return batch_start_ts + parse_video_timestamp(timestamp)


def absolute_to_video(unix_ts: int, batch_start_ts: int) -> str:
    return format_video_timestamp(unix_ts - batch_start_ts)


# ── Logical day ───────────────────────────────────────────────────────

def day_bounds(day: str, start_hour: int = LOGICAL_DAY_START_HOUR) -> tuple[int, int]:
    """Return (start_ts, end_ts) of a logical day given as YYYY-MM-DD."""
    date = datetime.strptime(day, DAY_FORMAT)
    start = date.replace(hour=start_hour)
    end = (date + timedelta(days=1)).replace(hour=start_hour)
    return int(start.timestamp()), int(end.timestamp())


def logical_day(unix_ts: int, start_hour: int = LOGICAL_DAY_START_HOUR) -> tuple[str, int, int]:
    """
    Logical day containing unix_ts.
    Returns (day_string, start_ts, end_ts).
    """
    moment = datetime.fromtimestamp(unix_ts)
    if moment.hour < start_hour:
        moment -= timedelta(days=1)
    day = moment.strftime(DAY_FORMAT)
    start_ts, end_ts = day_bounds(day, start_hour)
    return day, start_ts, end_ts


# ── Clock time (prompts / display) ────────────────────────────────────

def format_clock_time(unix_ts: int) -> str:
    """Format as "h:mm AM" in local time."""
    moment = datetime.fromtimestamp(unix_ts)
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def parse_time_hmma(time_string: str) -> int | None:
    """
    Parse "h:mm a" / "hh:mma" style times into minutes since midnight (0-1439).
    Returns None if parsing fails.
    """
    m = _CLOCK_RE.match(time_string.strip().upper())
    if not m:
        return None
    hour, minute, suffix = int(m.group(1)), int(m.group(2)), m.group(3)
    if not 1 <= hour <= 12 or minute > 59:
        return None
    hour = hour % 12 + (12 if suffix == "PM" else 0)
    return hour * 60 + minute


def format_duration(seconds: float) -> str:
    """Human-readable duration: "3m 5s" or "42s"."""
    minutes, secs = divmod(int(seconds), 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
