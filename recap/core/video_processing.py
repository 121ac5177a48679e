"""
Video processing using ffmpeg.
- Stitch batch chunks into one file (concat demuxer, stream copy)
- Probe duration with ffprobe
- Sample JPEG frames for the decomposed provider
- Render per-card timelapses
"""

import logging
import uuid
from pathlib import Path

from recap.core.security_utils import run_subprocess_capture, run_subprocess_bytes
from recap.core.error_codes import AnalysisError
from recap.core.constants import (
    ErrorCode, STITCH_CACHE_DIR, TIMELAPSE_DIR, TIMELAPSE_SPEEDUP,
    TIMELAPSE_FPS, FRAME_MAX_WIDTH,
)
from recap.core.timeparse import logical_day

logger = logging.getLogger(__name__)


def _concat_list_entry(path) -> str:
    # concat demuxer quoting: single quotes, embedded quotes escaped
    escaped = str(Path(path).resolve()).replace("'", "'\\''")
    return f"file '{escaped}'"


def stitch_chunks(chunk_paths: list, output_path: Path | None = None) -> Path:
    """
    Concatenate chunk files into a single mp4.
    A single chunk is returned as-is. Missing chunk files are skipped.
    """
    existing = [Path(p) for p in chunk_paths if Path(p).exists()]
    if not existing:
        raise AnalysisError(ErrorCode.VIDEO_STITCH, "No chunk files on disk to stitch")
    if len(existing) < len(chunk_paths):
        logger.warning("Stitching %d of %d chunks (missing files skipped)",
                       len(existing), len(chunk_paths))
    if len(existing) == 1 and output_path is None:
        return existing[0]

    STITCH_CACHE_DIR.mkdir(parents=True, exist_ok=True)
    if output_path is None:
        output_path = STITCH_CACHE_DIR / f"batch_{uuid.uuid4().hex[:12]}.mp4"
    output_path.parent.mkdir(parents=True, exist_ok=True)

    list_file = output_path.with_suffix(".txt")
    list_file.write_text("\n".join(_concat_list_entry(p) for p in existing) + "\n")

    args = [
        "ffmpeg",
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(list_file),
        "-c", "copy",
        str(output_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=600)
    except Exception as e:
        raise AnalysisError(ErrorCode.VIDEO_STITCH, f"ffmpeg stitch failed: {e}")
    finally:
        list_file.unlink(missing_ok=True)

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise AnalysisError(ErrorCode.VIDEO_STITCH,
                            f"ffmpeg failed (rc={result.returncode}): {stderr[-300:]}")

    if not output_path.exists():
        raise AnalysisError(ErrorCode.VIDEO_STITCH, "Stitched file not created")

    logger.info("Stitched %d chunks into %s", len(existing), output_path)
    return output_path


def get_video_duration(video_path: Path) -> float:
    """Get video duration in seconds using ffprobe. 0.0 if unknown."""
    args = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(video_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=30)
        if result.returncode == 0:
            return float(result.stdout.strip())
    except (OSError, ValueError) as e:
        logger.warning("ffprobe failed for %s: %s", video_path, e)
    except Exception as e:
        logger.warning("ffprobe failed for %s: %s", video_path, type(e).__name__)

    return 0.0


def extract_frame(video_path: Path, offset_sec: float,
                  max_width: int = FRAME_MAX_WIDTH) -> bytes | None:
    """Grab one JPEG frame at offset_sec. Returns None on failure."""
    args = [
        "ffmpeg",
        "-v", "error",
        "-ss", f"{offset_sec:.3f}",
        "-i", str(video_path),
        "-frames:v", "1",
        "-vf", f"scale='min({max_width},iw)':-2",
        "-f", "image2pipe",
        "-vcodec", "mjpeg",
        "-",
    ]
    try:
        result = run_subprocess_bytes(args, timeout=60)
    except Exception as e:
        logger.warning("Frame extraction at %.1fs failed: %s", offset_sec, e)
        return None
    if result.returncode != 0 or not result.stdout:
        logger.warning("Frame extraction at %.1fs failed (rc=%d)",
                       offset_sec, result.returncode)
        return None
    return result.stdout


def sample_frames(video_path: Path, duration_sec: float,
                  interval_sec: int) -> list[tuple[int, bytes]]:
    """
    Sample one frame every interval_sec.
    Returns [(offset_sec, jpeg_bytes)], skipping frames that fail to decode.
    """
    frames = []
    offset = 0
    while offset < duration_sec:
        data = extract_frame(video_path, offset)
        if data:
            frames.append((offset, data))
        offset += interval_sec
    logger.info("Sampled %d frames from %s (every %ds)",
                len(frames), video_path.name, interval_sec)
    return frames


def timelapse_path_for(card_id: int, start_ts: int, root: Path | None = None) -> Path:
    day = logical_day(start_ts)[0]
    return Path(root or TIMELAPSE_DIR) / day / f"card_{card_id}.mp4"


def render_timelapse(source_path: Path, output_path: Path,
                     speedup: int = TIMELAPSE_SPEEDUP,
                     fps: int = TIMELAPSE_FPS) -> Path:
    """Speed the source up by `speedup` and re-encode at `fps` (video only)."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    args = [
        "ffmpeg",
        "-y",
        "-i", str(source_path),
        "-an",
        "-vf", f"setpts=PTS/{speedup},fps={fps}",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-pix_fmt", "yuv420p",
        str(output_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=900)
    except Exception as e:
        raise AnalysisError(ErrorCode.VIDEO_STITCH, f"ffmpeg timelapse failed: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise AnalysisError(ErrorCode.VIDEO_STITCH,
                            f"ffmpeg timelapse failed (rc={result.returncode}): {stderr[-300:]}")

    logger.info("Rendered timelapse: %s", output_path)
    return output_path
