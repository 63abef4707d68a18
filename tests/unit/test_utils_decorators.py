"""Unit tests for the retry and tracing decorators."""

from unittest.mock import Mock, patch

import pytest

from liveflow.common.exceptions import UpstreamUnavailableError
from liveflow.utils.decorators import retry_with_backoff, traced


class TestRetryWithBackoff:
    """Test retry behaviour and backoff delays."""

    @patch("liveflow.utils.decorators.time.sleep")
    def test_retries_until_success(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
        func.__name__ = "read"

        result = retry_with_backoff(max_retries=3, initial_delay=1.0)(func)()

        assert result == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("liveflow.utils.decorators.time.sleep")
    def test_delay_is_capped(self, mock_sleep):
        func = Mock(side_effect=[ValueError(), ValueError(), ValueError(), "ok"])
        func.__name__ = "read"

        retry_with_backoff(max_retries=3, initial_delay=5.0, max_delay=8.0)(func)()

        assert [c.args[0] for c in mock_sleep.call_args_list] == [5.0, 8.0, 8.0]

    @patch("liveflow.utils.decorators.time.sleep")
    def test_exhausted_retries_raise_last_error(self, mock_sleep):
        func = Mock(side_effect=UpstreamUnavailableError("memory:txs", "down"))
        func.__name__ = "read"

        with pytest.raises(UpstreamUnavailableError):
            retry_with_backoff(max_retries=2, initial_delay=0.0)(func)()

        assert func.call_count == 3

    @patch("liveflow.utils.decorators.time.sleep")
    def test_retry_condition_stops_retries(self, mock_sleep):
        func = Mock(side_effect=ValueError("not transient"))
        func.__name__ = "read"
        wrapped = retry_with_backoff(
            max_retries=5,
            retry_condition=lambda exc: getattr(exc, "is_retryable", False),
        )(func)

        with pytest.raises(ValueError):
            wrapped()

        assert func.call_count == 1
        mock_sleep.assert_not_called()

    @patch("liveflow.utils.decorators.time.sleep")
    def test_retry_on_filters_exception_types(self, mock_sleep):
        func = Mock(side_effect=KeyError("x"))
        func.__name__ = "read"

        with pytest.raises(KeyError):
            retry_with_backoff(max_retries=2, retry_on=(ConnectionError,))(func)()

        assert func.call_count == 1

    @patch("liveflow.utils.decorators.time.sleep")
    def test_on_retry_callback(self, mock_sleep):
        seen = []
        func = Mock(side_effect=[ConnectionError("down"), "ok"])
        func.__name__ = "read"

        retry_with_backoff(max_retries=1, initial_delay=0.0, on_retry=lambda n, exc: seen.append(n))(func)()

        assert seen == [1]


class TestTraced:
    """Test span instrumentation."""

    def test_returns_result(self):
        @traced("liveflow.test")
        def add(a, b):
            return a + b

        assert add(1, 2) == 3
        assert add.__name__ == "add"

    def test_errors_are_re_raised(self):
        @traced(attribute_getter=lambda value: {"value": value})
        def fail(value):
            raise RuntimeError(value)

        with pytest.raises(RuntimeError, match="boom"):
            fail("boom")
