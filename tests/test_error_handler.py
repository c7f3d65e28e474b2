"""
Tests for upstream error classification and retry-after extraction.
"""

import httpx
import litellm
import pytest

from quota_broker import FailureKind, WindowKind, classify_error
from quota_broker.error_handler import (
    AttemptLog,
    ClassifiedError,
    _parse_duration_string,
    detect_quota_window,
    get_retry_after,
    mask_credential,
)

from fixtures.broker_mocks import GEMINI_QUOTA_BODY, http_status_error


class TestClassification:

    @pytest.mark.parametrize(
        "status, body, expected",
        [
            (429, GEMINI_QUOTA_BODY, FailureKind.QUOTA_EXHAUSTED),
            (429, "Too many requests", FailureKind.RATE_LIMITED),
            (401, "Unauthorized", FailureKind.CREDENTIAL_INVALID),
            (403, "Permission denied", FailureKind.CREDENTIAL_INVALID),
            (400, "API key not valid. Please pass a valid API key.", FailureKind.CREDENTIAL_INVALID),
            (404, "Not found", FailureKind.MODEL_UNAVAILABLE),
            (400, "Model not found: gemini-9", FailureKind.MODEL_UNAVAILABLE),
            (500, "Internal error", FailureKind.TRANSIENT),
            (503, "The model is overloaded.", FailureKind.TRANSIENT),
            (400, "Invalid argument: temperature", FailureKind.REQUEST_ERROR),
            (422, "Unprocessable", FailureKind.REQUEST_ERROR),
        ],
    )
    def test_http_status_errors(self, status, body, expected):
        classified = classify_error(http_status_error(status, body))

        assert classified.kind is expected
        assert classified.status_code == status

    def test_network_errors_are_transient(self):
        assert classify_error(httpx.ConnectTimeout("timed out")).kind is FailureKind.TRANSIENT
        assert classify_error(httpx.ConnectError("refused")).kind is FailureKind.TRANSIENT
        assert classify_error(httpx.ReadTimeout("slow")).kind is FailureKind.TRANSIENT

    def test_litellm_rate_limit(self):
        """Test that LiteLLM's RateLimitError mentioning quota is a quota error."""
        error = litellm.RateLimitError(
            message="Resource has been exhausted (e.g. check quota).",
            llm_provider="gemini",
            model="gemini-2.5-flash",
        )

        classified = classify_error(error)

        assert classified.kind is FailureKind.QUOTA_EXHAUSTED
        assert classified.status_code == 429

    def test_unknown_exception(self):
        classified = classify_error(ValueError("boom"))

        assert classified.kind is FailureKind.UNKNOWN
        assert classified.status_code is None

    def test_only_request_errors_stop_rotation(self):
        assert [k for k in FailureKind if not k.should_rotate] == [FailureKind.REQUEST_ERROR]
        assert FailureKind.RATE_LIMITED.is_quota
        assert not FailureKind.TRANSIENT.is_quota

    def test_str_contains_kind_and_window(self):
        text = str(classify_error(http_status_error(429, GEMINI_QUOTA_BODY)))
        assert text.startswith("quota_exhausted [status=429")
        assert "window=rpd" in text


class TestQuotaWindow:

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("GenerateRequestsPerDayPerProjectPerModel-FreeTier", WindowKind.RPD),
            ("GenerateRequestsPerMinutePerProjectPerModel-FreeTier", WindowKind.RPM),
            ("GenerateContentInputTokensPerModelPerMinute-FreeTier", WindowKind.TPM),
            ("Rate limit reached: requests per hour", WindowKind.RPH),
            ("slow down", None),
            ("", None),
        ],
    )
    def test_detect_quota_window(self, text, expected):
        assert detect_quota_window(text) is expected


class TestRetryAfter:

    def test_json_retry_delay(self):
        assert get_retry_after(http_status_error(429, GEMINI_QUOTA_BODY)) == 42

    def test_retry_after_header(self):
        error = http_status_error(429, "busy", {"Retry-After": "17"})
        assert get_retry_after(error) == 17

    def test_message_patterns(self):
        assert get_retry_after(Exception("Please retry after 30s")) == 30
        assert get_retry_after(Exception("Your quota will reset after 1h2m3s.")) == 3723
        assert get_retry_after(Exception("Please try again in 12 seconds")) == 12
        assert get_retry_after(Exception("no hint here")) is None

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("42s", 42),
            ("2h30m", 9000),
            ("156h14m36.75s", 562476),
            ("3600", 3600),
            ("", None),
            ("soon", None),
        ],
    )
    def test_duration_strings(self, text, expected):
        assert _parse_duration_string(text) == expected


class TestMasking:

    def test_mask_long_key(self):
        assert mask_credential("AIzaSyA-abcdef123456") == "...123456"

    def test_mask_short_or_empty(self):
        assert mask_credential("abc123") == "***"
        assert mask_credential("") == "***"


class TestAttemptLog:

    def test_summary_and_messages(self):
        log = AttemptLog("capability=chat, model=gemini-2.5-flash")
        log.record("...aaaaaa/gemini-2.5-flash", classify_error(http_status_error(429, "Too many")))
        log.record("...bbbbbb/gemini-2.5-flash", classify_error(http_status_error(503, "Down")))
        log.record("...cccccc/gemini-2.5-flash", classify_error(http_status_error(429, "Slow")))

        assert len(log) == 3
        assert log.summary() == "2x rate_limited, 1x transient"
        message = log.build_log_message()
        assert message.startswith("ALL CANDIDATES FAILED: 3 tried")
        assert "...bbbbbb/gemini-2.5-flash=503" in message
        assert "aaaaaa" not in log.client_message()

    def test_long_messages_are_truncated(self):
        log = AttemptLog()
        log.record("k", ClassifiedError(FailureKind.UNKNOWN, RuntimeError("x" * 500)))

        assert len(log.attempts[0]["message"]) == 150
        assert log.attempts[0]["message"].endswith("...")
