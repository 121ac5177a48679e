"""
HTTP plumbing shared by the providers.
Retries 429 / 5xx / connection errors with exponential backoff and jitter and
records one LLMCall audit row per attempt.
"""

import json
import time
import uuid
import random
import logging

import requests

from recap.core.constants import (
    ErrorCode, CallStatus, MAX_HTTP_RETRIES, HTTP_RETRY_BASE_DELAY,
)
from recap.core.error_codes import AnalysisError, is_retryable
from recap.core.models_sqlite import LLMCall

logger = logging.getLogger(__name__)

_RETRY_STATUS = {429, 500, 502, 503, 504}


class CallAudit:
    """Collects the audit rows for one provider operation on one batch."""

    def __init__(self, provider: str, model: str | None = None, batch_id: int | None = None):
        self.provider = provider
        self.model = model
        self.batch_id = batch_id
        self.calls: list[LLMCall] = []

    def record(self, operation: str, group_id: str, attempt: int, started: float,
               method: str, url: str, request_body=None, response=None,
               error_code: str | None = None, error_message: str | None = None) -> LLMCall:
        call = LLMCall(
            provider=self.provider,
            operation=operation,
            status=CallStatus.FAILURE if error_code else CallStatus.SUCCESS,
            attempt=attempt,
            batch_id=self.batch_id,
            call_group_id=group_id,
            model=self.model,
            latency_ms=int((time.monotonic() - started) * 1000),
            http_status=response.status_code if response is not None else None,
            request_method=method,
            request_url=url,
            request_body=_body_text(request_body),
            response_body=_response_text(response),
            error_code=error_code,
            error_message=error_message,
        )
        self.calls.append(call)
        return call

    def fail(self, code: str, message: str) -> AnalysisError:
        return AnalysisError(code, message, calls=self.calls)


def _body_text(body) -> str | None:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return f"<{len(body)} bytes>"
    if isinstance(body, str):
        return body
    try:
        return json.dumps(_strip_images(body))
    except (TypeError, ValueError):
        return repr(body)


def _strip_images(body):
    """Replace base64 image payloads so audit rows stay small."""
    if isinstance(body, dict):
        return {k: (f"<{len(v)} image(s)>" if k == 'images' and isinstance(v, list)
                    else _strip_images(v))
                for k, v in body.items()}
    if isinstance(body, list):
        return [_strip_images(v) for v in body]
    return body


def _response_text(response) -> str | None:
    if response is None:
        return None
    try:
        return response.text
    except Exception:
        return None


def _status_error_code(status: int) -> str:
    if status == 504:
        return ErrorCode.PROVIDER_TIMEOUT
    if status in _RETRY_STATUS:
        return ErrorCode.NETWORK_TRANSIENT
    return ErrorCode.PROVIDER_REQUEST_FAILED


def backoff_delay(attempt: int, base: float = HTTP_RETRY_BASE_DELAY) -> float:
    """base * 2^attempt, +/- 10% jitter."""
    delay = base * (2 ** attempt)
    return delay * (1 + random.uniform(-0.1, 0.1))


def send_with_retry(session: requests.Session, method: str, url: str, *,
                    audit: CallAudit, operation: str, timeout: float,
                    json_body=None, data=None, headers: dict | None = None,
                    max_retries: int = MAX_HTTP_RETRIES,
                    sleep=time.sleep) -> requests.Response:
    """
    Send a request, retrying transient failures.
    Returns the first 2xx response; raises AnalysisError carrying the audit
    rows otherwise.
    """
    group_id = uuid.uuid4().hex
    logged_body = json_body if json_body is not None else data

    for attempt in range(max_retries + 1):
        started = time.monotonic()
        try:
            resp = session.request(method, url, json=json_body, data=data,
                                   headers=headers, timeout=timeout)
        except requests.exceptions.Timeout:
            code, message, resp = ErrorCode.PROVIDER_TIMEOUT, f"{operation} request timed out", None
        except requests.exceptions.ConnectionError as e:
            code, message, resp = ErrorCode.NETWORK_TRANSIENT, f"Network error during {operation}: {e}", None
        except requests.exceptions.RequestException as e:
            code, message, resp = ErrorCode.PROVIDER_REQUEST_FAILED, f"{operation} request failed: {e}", None
        else:
            if 200 <= resp.status_code < 300:
                audit.record(operation, group_id, attempt + 1, started, method, url,
                             logged_body, resp)
                return resp

            # Never echo credentials; only the status and a body snippet
            snippet = (resp.text or "")[:300]
            message = f"{operation} returned {resp.status_code}: {snippet}"
            code = _status_error_code(resp.status_code)

        audit.record(operation, group_id, attempt + 1, started, method, url,
                     logged_body, resp, code, message)
        if not is_retryable(code):
            raise audit.fail(code, message)

        if attempt < max_retries:
            delay = backoff_delay(attempt)
            logger.warning("%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                           operation, code, delay, attempt + 1, max_retries)
            sleep(delay)
            continue
        raise audit.fail(code, f"{message} (after {max_retries} retries)")

    # Should never reach here
    raise audit.fail(ErrorCode.NETWORK_TRANSIENT, f"{operation} exhausted retries")


def post_json(session: requests.Session, url: str, payload: dict, *,
              audit: CallAudit, operation: str, timeout: float,
              headers: dict | None = None, max_retries: int = MAX_HTTP_RETRIES,
              sleep=time.sleep) -> dict:
    """POST a JSON body and decode the JSON response."""
    resp = send_with_retry(session, "POST", url, audit=audit, operation=operation,
                           timeout=timeout, json_body=payload, headers=headers,
                           max_retries=max_retries, sleep=sleep)
    try:
        return resp.json()
    except ValueError:
        raise audit.fail(ErrorCode.RESPONSE_PARSE,
                         f"Failed to parse {operation} response JSON")


def parse_json_text(text: str, audit: CallAudit, operation: str):
    """
    Decode JSON the model wrote as text. Tolerates ```json fences and
    surrounding prose by falling back to the outermost bracketed span.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip('`')
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
        cleaned = cleaned.strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    for open_ch, close_ch in (('[', ']'), ('{', '}')):
        start, end = cleaned.find(open_ch), cleaned.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except ValueError:
                continue
    raise audit.fail(ErrorCode.RESPONSE_PARSE,
                     f"{operation} returned unparseable JSON: {cleaned[:200]}")
