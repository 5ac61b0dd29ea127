"""Tests for retry utilities with exponential backoff."""

import threading
from unittest.mock import MagicMock, patch

import httpx
import pytest

from zen_context.core.retry import (
    MAX_RETRY_DELAY,
    RETRYABLE_NETWORK_EXCEPTIONS,
    RETRYABLE_STATUS_CODES,
    backoff_delay,
    call_with_retry,
    is_retryable_error,
    parse_retry_after,
)


def status_error(code: int, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://embed.test")
    response = httpx.Response(code, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestRetryableStatusCodes:
    """Tests for retryable status code constants."""

    def test_includes_rate_limit(self):
        assert 429 in RETRYABLE_STATUS_CODES

    def test_includes_server_errors(self):
        for code in (500, 502, 503, 504):
            assert code in RETRYABLE_STATUS_CODES

    def test_excludes_client_errors(self):
        for code in (400, 401, 403, 404):
            assert code not in RETRYABLE_STATUS_CODES

    def test_network_exceptions(self):
        assert issubclass(httpx.ConnectError, RETRYABLE_NETWORK_EXCEPTIONS)
        assert issubclass(httpx.ReadTimeout, RETRYABLE_NETWORK_EXCEPTIONS)
        assert issubclass(TimeoutError, RETRYABLE_NETWORK_EXCEPTIONS)


class TestIsRetryableError:
    """Tests for is_retryable_error function."""

    def test_timeout_error_retryable(self):
        assert is_retryable_error(TimeoutError("timed out"))

    def test_status_errors(self):
        assert is_retryable_error(status_error(503))
        assert is_retryable_error(status_error(429))
        assert not is_retryable_error(status_error(401))
        assert not is_retryable_error(status_error(400))

    def test_programming_errors_not_retryable(self):
        assert not is_retryable_error(ValueError("bad"))
        assert not is_retryable_error(KeyError("data"))
        assert not is_retryable_error(TypeError("nope"))

    def test_message_hints(self):
        assert is_retryable_error(RuntimeError("service temporarily unavailable"))
        assert not is_retryable_error(RuntimeError("invalid api key"))

    def test_status_code_needs_word_boundary(self):
        assert is_retryable_error(RuntimeError("upstream returned 503"))
        assert not is_retryable_error(RuntimeError("unit 503a failed"))


class TestParseRetryAfter:
    """Tests for parse_retry_after."""

    def test_seconds(self):
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "12"})) == 12.0

    def test_missing_header(self):
        assert parse_retry_after(httpx.Response(429)) is None
        assert parse_retry_after(None) is None

    def test_capped(self):
        response = httpx.Response(429, headers={"Retry-After": "999999"})
        assert parse_retry_after(response) == MAX_RETRY_DELAY

    def test_garbage(self):
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "soon"})) is None


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_exponential(self):
        assert backoff_delay(0, base_delay=1.0, jitter=0.0) == 1.0
        assert backoff_delay(3, base_delay=1.0, jitter=0.0) == 8.0

    def test_capped(self):
        assert backoff_delay(20, base_delay=1.0, max_delay=30.0) == 30.0

    def test_jitter_bounded(self):
        for _ in range(20):
            delay = backoff_delay(0, base_delay=1.0, jitter=0.5)
            assert 1.0 <= delay <= 1.5


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @patch("zen_context.core.retry.time.sleep")
    def test_succeeds_after_transient_failures(self, mock_sleep):
        func = MagicMock(side_effect=[httpx.ConnectError("refused"), httpx.ConnectError("refused"), "ok"])

        assert call_with_retry(func, "arg", max_retries=3, base_delay=0.1) == "ok"
        assert func.call_count == 3
        func.assert_called_with("arg")
        assert mock_sleep.call_count == 2

    @patch("zen_context.core.retry.time.sleep")
    def test_non_retryable_raises_immediately(self, mock_sleep):
        func = MagicMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            call_with_retry(func, max_retries=3)
        assert func.call_count == 1
        mock_sleep.assert_not_called()

    @patch("zen_context.core.retry.time.sleep")
    def test_exhausted_retries_raise_last_error(self, mock_sleep):
        func = MagicMock(side_effect=status_error(503))

        with pytest.raises(httpx.HTTPStatusError):
            call_with_retry(func, max_retries=2)
        assert func.call_count == 3

    @patch("zen_context.core.retry.time.sleep")
    def test_retry_after_header_used(self, mock_sleep):
        func = MagicMock(side_effect=[status_error(429, {"Retry-After": "7"}), "ok"])

        assert call_with_retry(func, max_retries=1) == "ok"
        mock_sleep.assert_called_once_with(7.0)

    def test_cancel_event_interrupts_wait(self):
        cancel = threading.Event()
        cancel.set()
        func = MagicMock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(httpx.ConnectError):
            call_with_retry(func, max_retries=5, base_delay=60.0, cancel_event=cancel)
        assert func.call_count == 1
