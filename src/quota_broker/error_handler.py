import re
import json
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List

import httpx

from litellm.exceptions import (
    APIConnectionError,
    RateLimitError,
    ServiceUnavailableError,
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    InvalidRequestError,
    BadRequestError,
    InternalServerError,
    Timeout,
    ContextWindowExceededError,
)

from .models import WindowKind

lib_logger = logging.getLogger("quota_broker")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)([hms])")
_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}


def _parse_duration_string(duration_str: str) -> Optional[int]:
    """
    Seconds in a provider duration: '42s', '2h30m', '156h14m36.75s' or a bare '3600'.
    Returns None when nothing usable is found.
    """
    text = (duration_str or "").strip().lower()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        pass
    total = sum(float(value) * _UNIT_SECONDS[unit] for value, unit in _DURATION_PART.findall(text))
    return int(total) or None


class NoAvailableCandidateError(Exception):
    """
    Raised when no credential/model pair can serve a requirement right now.

    This is the only broker error callers are expected to handle: it signals
    backpressure (queue, reject, or alert), never a bug.

    Attributes:
        requirement: Human-readable description of what was asked for
        retry_after: Seconds until the earliest exclusion or window expires, if known
        attempts: Summary of failed attempts when raised by FailoverExecutor
    """

    def __init__(
        self,
        message: str,
        requirement: str = "",
        retry_after: Optional[float] = None,
        attempts: Optional["AttemptLog"] = None,
    ):
        self.requirement = requirement
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(message)


class UnknownBindingError(KeyError):
    """Raised when an operation references a binding or credential id that does not exist."""


class FailureKind(str, Enum):
    """Error taxonomy for upstream call outcomes."""

    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    CREDENTIAL_INVALID = "credential_invalid"
    MODEL_UNAVAILABLE = "model_unavailable"
    REQUEST_ERROR = "request_error"
    UNKNOWN = "unknown"

    @property
    def is_quota(self) -> bool:
        return self in (FailureKind.QUOTA_EXHAUSTED, FailureKind.RATE_LIMITED)

    @property
    def should_rotate(self) -> bool:
        """Whether trying another candidate can help."""
        return self is not FailureKind.REQUEST_ERROR


# Phrases providers use when the key itself is unusable
INVALID_CREDENTIAL_PATTERNS = (
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "incorrect api key",
    "reported as leaked",
    "leaked",
    "revoked",
    "key has been disabled",
    "permission_denied",
)

MODEL_UNAVAILABLE_PATTERNS = (
    "model not found",
    "is not found for api version",
    "does not exist",
    "model_not_found",
    "not supported for generatecontent",
)

# Gemini-style quota ids name the window they tripped, e.g.
# "GenerateRequestsPerDayPerProjectPerModel-FreeTier"
# "GenerateContentInputTokensPerModelPerMinute-FreeTier"
_WINDOW_PATTERNS = (
    (re.compile(r"tokensper\w*minute|tokens per minute|\btpm\b"), WindowKind.TPM),
    (re.compile(r"perday|per day|per_day|\brpd\b|daily"), WindowKind.RPD),
    (re.compile(r"perhour|per hour|per_hour|\brph\b|hourly"), WindowKind.RPH),
    (re.compile(r"perminute|per minute|per_minute|\brpm\b"), WindowKind.RPM),
)


def detect_quota_window(error_text: Optional[str]) -> Optional[WindowKind]:
    """Guess which rate-limit window an upstream quota error refers to."""
    if not error_text:
        return None
    lowered = error_text.lower()
    for pattern, kind in _WINDOW_PATTERNS:
        if pattern.search(lowered):
            return kind
    return None


def mask_credential(credential: str) -> str:
    """Last six characters of a key for logs, e.g. '...xyz123'. Short keys are fully hidden."""
    if not credential or len(credential) <= 6:
        return "***"
    return f"...{credential[-6:]}"


@dataclass
class ClassifiedError:
    """An upstream failure mapped onto the broker's error taxonomy."""

    kind: FailureKind
    original_exception: Exception
    status_code: Optional[int] = None
    retry_after: Optional[int] = None
    window: Optional[WindowKind] = None

    def __str__(self):
        details = f"status={self.status_code}, retry_after={self.retry_after}"
        if self.window:
            details += f", window={self.window.value}"
        return f"{self.kind.value} [{details}]: {self.original_exception}"


def _retry_from_details(details: List[Any]) -> Optional[int]:
    for detail in details:
        if not isinstance(detail, dict):
            continue
        metadata = detail.get("metadata") if isinstance(detail.get("metadata"), dict) else {}
        for raw in (detail.get("retryDelay"), metadata.get("quotaResetDelay")):
            seconds = _parse_duration_string(str(raw)) if raw else None
            if seconds is not None:
                return seconds
    return None


def _extract_retry_from_json_body(json_text: str) -> Optional[int]:
    """
    Retry delay from a Google-style error body: `RetryInfo.retryDelay` or
    `ErrorInfo.metadata.quotaResetDelay` inside `error.details`.
    """
    start = json_text.find("{") if json_text else -1
    if start == -1:
        return None
    try:
        data = json.loads(json_text[start:])
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error", data)
    details = error.get("details") if isinstance(error, dict) else None
    return _retry_from_details(details) if isinstance(details, list) else None


def _retry_from_headers(headers: httpx.Headers) -> Optional[int]:
    retry_header = headers.get("retry-after")
    if retry_header:
        try:
            return int(float(retry_header))
        except ValueError:
            pass  # HTTP-date form
    reset_header = headers.get("x-ratelimit-reset")
    if reset_header:
        try:
            wait_seconds = int(float(reset_header) - time.time())
        except ValueError:
            return None
        return wait_seconds if wait_seconds > 0 else None
    return None


_RETRY_PHRASES = [
    re.compile(p)
    for p in (
        r"retry[-_\s]after:?\s*([\dhms.]+)",
        r"retry in\s*([\d.]+)\s*s",
        r"try again in\s*(\d+)\s*seconds?",
        r"reset after\s*([\dhms.]+)",
    )
]


def _error_body(error: Exception) -> str:
    response = getattr(error, "response", None)
    if response is not None:
        try:
            return response.text or ""
        except (AttributeError, httpx.ResponseNotRead):
            return ""
    body = getattr(error, "body", None)
    if body is not None:
        return body if isinstance(body, str) else json.dumps(body, default=str)
    return ""


def get_retry_after(error: Exception) -> Optional[int]:
    """
    Seconds the provider asked us to wait, if it said so.

    Looks at the JSON body (retryDelay / quotaResetDelay), then the Retry-After
    and X-RateLimit-Reset headers of httpx errors, then phrasing in the message
    such as "retry after 30s" or "quota will reset after 1h2m3s".
    """
    if isinstance(error, httpx.HTTPStatusError):
        result = _extract_retry_from_json_body(_error_body(error))
        if result is None:
            result = _retry_from_headers(error.response.headers)
        if result is not None:
            return result

    message = str(error)
    result = _extract_retry_from_json_body(message)
    if result is not None:
        return result
    lowered = message.lower()
    for pattern in _RETRY_PHRASES:
        match = pattern.search(lowered)
        seconds = _parse_duration_string(match.group(1)) if match else None
        if seconds is not None:
            return seconds
    return None


def _matches_any(text: str, patterns) -> bool:
    return any(p in text for p in patterns)


def classify_error(e: Exception) -> ClassifiedError:
    """
    Classifies an upstream exception into a ClassifiedError.

    Handles httpx and litellm exceptions:
    - 429 / RateLimitError: quota_exhausted when the body mentions quota, else rate_limited
    - 401 / 403 / "leaked" / "revoked": credential_invalid (deactivate the key)
    - 404 / "model not found": model_unavailable (disable the binding)
    - 5xx / timeouts / connection errors: transient (short exclusion)
    - other 4xx / context window: request_error (do not rotate)
    - anything else: unknown (treated as transient by the broker)
    """
    status_code = getattr(e, "status_code", None)
    body = _error_body(e)
    text = f"{e} {body}".lower()

    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code

    if isinstance(e, RateLimitError) or status_code == 429:
        retry_after = get_retry_after(e)
        window = detect_quota_window(text)
        kind = (
            FailureKind.QUOTA_EXHAUSTED
            if "quota" in text or "resource_exhausted" in text
            else FailureKind.RATE_LIMITED
        )
        return ClassifiedError(kind, e, status_code or 429, retry_after, window)

    if isinstance(e, (AuthenticationError, PermissionDeniedError)) or status_code in (401, 403):
        return ClassifiedError(FailureKind.CREDENTIAL_INVALID, e, status_code or 401)

    if _matches_any(text, INVALID_CREDENTIAL_PATTERNS) and (status_code or 400) < 500:
        return ClassifiedError(FailureKind.CREDENTIAL_INVALID, e, status_code or 400)

    if isinstance(e, NotFoundError) or status_code == 404:
        return ClassifiedError(FailureKind.MODEL_UNAVAILABLE, e, status_code or 404)

    if _matches_any(text, MODEL_UNAVAILABLE_PATTERNS) and (status_code or 400) < 500:
        return ClassifiedError(FailureKind.MODEL_UNAVAILABLE, e, status_code or 404)

    if isinstance(e, ContextWindowExceededError):
        return ClassifiedError(FailureKind.REQUEST_ERROR, e, status_code or 400)

    if isinstance(e, (httpx.TimeoutException, httpx.NetworkError, APIConnectionError, Timeout)):
        return ClassifiedError(FailureKind.TRANSIENT, e, status_code)

    if isinstance(e, (ServiceUnavailableError, InternalServerError)):
        return ClassifiedError(FailureKind.TRANSIENT, e, status_code or 503)

    if status_code is not None and status_code >= 500:
        return ClassifiedError(FailureKind.TRANSIENT, e, status_code)

    if isinstance(e, (InvalidRequestError, BadRequestError)) or (
        status_code is not None and 400 <= status_code < 500
    ):
        return ClassifiedError(FailureKind.REQUEST_ERROR, e, status_code or 400)

    return ClassifiedError(FailureKind.UNKNOWN, e, status_code)


class AttemptLog:
    """
    Tracks the failures seen during one caller's failover loop.

    Used to build an error message when every candidate fails. The
    user-facing message stays generic; per-attempt details (with masked
    credentials) go to the server log.
    """

    def __init__(self, requirement: str = ""):
        self.requirement = requirement
        self.attempts: List[Dict[str, Any]] = []

    def record(self, candidate_label: str, classified: ClassifiedError) -> None:
        self.attempts.append(
            {
                "candidate": candidate_label,
                "kind": classified.kind.value,
                "status_code": classified.status_code,
                "message": self._truncate_message(str(classified.original_exception)),
            }
        )

    @staticmethod
    def _truncate_message(message: str, max_length: int = 150) -> str:
        message = " ".join(message.split())
        if len(message) > max_length:
            return message[: max_length - 3] + "..."
        return message

    def __len__(self) -> int:
        return len(self.attempts)

    def summary(self) -> str:
        """Counts per failure kind, e.g. '2x rate_limited, 1x transient'."""
        counts: Dict[str, int] = {}
        for attempt in self.attempts:
            counts[attempt["kind"]] = counts.get(attempt["kind"], 0) + 1
        return ", ".join(f"{n}x {kind}" for kind, n in sorted(counts.items()))

    def build_log_message(self) -> str:
        parts = [f"ALL CANDIDATES FAILED: {len(self.attempts)} tried for {self.requirement}"]
        if self.attempts:
            parts.append(self.summary())
            parts.extend(f"{a['candidate']}={a['status_code'] or a['kind']}" for a in self.attempts)
        return " | ".join(parts)

    def client_message(self) -> str:
        return "Service temporarily busy. Please retry shortly."
