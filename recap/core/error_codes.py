"""
Standardised error handling for the analysis pipeline.
"""

from recap.core.constants import RETRYABLE_ERRORS


class AnalysisError(Exception):
    """Raised when a batch or provider call hits a known error condition.

    ``calls`` holds the LLM audit rows recorded before the failure so the
    caller can persist them alongside the failed batch.
    """

    def __init__(self, code: str, message: str, calls: list | None = None):
        self.code = code
        self.message = message
        self.calls = list(calls or [])
        super().__init__(f"[{code}] {message}")


def is_retryable(code: str) -> bool:
    """Whether an HTTP attempt failing with this code is worth repeating."""
    return code in RETRYABLE_ERRORS
