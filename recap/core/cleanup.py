"""
Cleanup: best-effort removal of recordings, stitched videos and timelapses.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def remove_files(paths) -> int:
    """
    Delete each path, logging (not raising) failures.
    Returns the number of files actually removed.
    """
    removed = 0
    for path in paths:
        if not path:
            continue
        path = Path(path)
        try:
            path.unlink()
            removed += 1
            logger.debug("Deleted: %s", path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
    return removed


def prune_empty_dirs(root: Path):
    """Remove empty per-day subdirectories under root (the root itself is kept)."""
    if not root.exists():
        return
    for child in root.iterdir():
        if not child.is_dir():
            continue
        try:
            if not any(child.iterdir()):
                child.rmdir()
                logger.debug("Removed empty dir: %s", child)
        except OSError:
            pass
