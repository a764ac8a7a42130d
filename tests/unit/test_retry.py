import pytest

from apiflow.config import RetryConfig
from apiflow.errors import (
    CallTimeoutError,
    HTTPClientError,
    HTTPServerError,
    NetworkError,
    TemplateResolutionError,
    status_error,
)
from apiflow.utils.retry import RetryPolicy, compute_backoff, is_retryable


def test_compute_backoff_grows_and_caps():
    assert compute_backoff(1, base_ms=500, multiplier=2, max_ms=30_000) == 500
    assert compute_backoff(2, base_ms=500, multiplier=2, max_ms=30_000) == 1000
    assert compute_backoff(3, base_ms=500, multiplier=2, max_ms=30_000) == 2000
    assert compute_backoff(10, base_ms=500, multiplier=2, max_ms=30_000) == 30_000


def test_compute_backoff_jitter_stays_in_range():
    for _ in range(20):
        delay = compute_backoff(1, base_ms=100, jitter_ms=50)
        assert 100 <= delay <= 150


@pytest.mark.parametrize(
    "error,expected",
    [
        (NetworkError("down"), True),
        (CallTimeoutError("slow"), True),
        (HTTPServerError("503", 503), True),
        (HTTPClientError("404", 404), False),
        (TemplateResolutionError("missing"), False),
        (ValueError("other"), False),
    ],
)
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected


def test_status_error_classes():
    assert isinstance(status_error(502, "x"), HTTPServerError)
    assert isinstance(status_error(429, "x"), HTTPClientError)
    assert status_error(302, "x").status_code == 302


def test_should_retry_until_max_attempts():
    policy = RetryPolicy(max_attempts=3, base_delay_ms=100, multiplier=2)
    error = NetworkError("down")

    first = policy.should_retry(error, 1)
    second = policy.should_retry(error, 2)

    assert first.retry and first.backoff_ms == 100
    assert second.retry and second.backoff_ms == 200
    assert not policy.should_retry(error, 3).retry


def test_should_retry_respects_overrides_and_budget():
    policy = RetryPolicy(max_attempts=3, execution_budget=2)
    error = HTTPServerError("503", 503)

    assert not policy.should_retry(error, 1, max_attempts=1).retry
    assert policy.should_retry(error, 1, retries_used=1).retry
    assert not policy.should_retry(error, 1, retries_used=2).retry
    assert not policy.should_retry(HTTPClientError("400", 400), 1).retry


def test_policy_from_config():
    policy = RetryPolicy.from_config(
        RetryConfig(max_attempts=5, base_delay_ms=10, max_delay_ms=20, execution_budget=4)
    )
    assert policy.max_attempts == 5
    assert policy.execution_budget == 4
    assert policy.should_retry(NetworkError("x"), 4).backoff_ms == 20


def test_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
