"""
Security utilities for ScreenRecap.
- Safe subprocess execution (argument arrays only)
- Keychain integration (macOS) for the Gemini API key
"""

import subprocess
import logging

from recap.core.constants import KEYCHAIN_SERVICE, KEYCHAIN_ACCOUNT

logger = logging.getLogger(__name__)


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr as text."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def run_subprocess_bytes(args: list[str], timeout: int = 300) -> subprocess.CompletedProcess:
    """Run subprocess and capture raw stdout (image frames piped from ffmpeg)."""
    return run_subprocess(args, capture_output=True, timeout=timeout)


# ── Keychain integration (macOS) ──────────────────────────────────────

def _keychain_args(action: str, *extra: str) -> list[str]:
    return ["security", action, "-s", KEYCHAIN_SERVICE, "-a", KEYCHAIN_ACCOUNT, *extra]


def keychain_get_api_key() -> str | None:
    """Retrieve the Gemini API key from macOS Keychain."""
    try:
        result = run_subprocess_capture(
            _keychain_args("find-generic-password", "-w"), timeout=10,
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    except Exception as e:
        logger.warning("Keychain read failed: %s", type(e).__name__)
    return None


def keychain_set_api_key(api_key: str) -> bool:
    """Store or update the Gemini API key in macOS Keychain."""
    try:
        result = run_subprocess_capture(
            _keychain_args("add-generic-password", "-w", api_key, "-U"), timeout=10,
        )
        return result.returncode == 0
    except Exception as e:
        logger.error("Keychain write failed: %s", type(e).__name__)
        return False


def keychain_delete_api_key() -> bool:
    try:
        result = run_subprocess_capture(
            _keychain_args("delete-generic-password"), timeout=10,
        )
        return result.returncode == 0
    except Exception:
        return False
