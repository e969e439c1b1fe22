import pytest

from bootstrap_installer.retry import RetryExhausted, RetryPolicy


def _transient(e: BaseException) -> bool:
    return isinstance(e, ConnectionError)


def test_delays_grow_and_are_capped() -> None:
    policy = RetryPolicy(base_delay=5.0, multiplier=3.0, max_delay=20.0, jitter=0.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [5.0, 15.0, 20.0]


def test_jitter_stays_in_bounds() -> None:
    policy = RetryPolicy(base_delay=10.0, jitter=0.1)
    assert policy.delay(1, rng=lambda: 0.0) == pytest.approx(9.0)
    assert policy.delay(1, rng=lambda: 1.0) == pytest.approx(11.0)


def test_retries_transient_errors_until_success() -> None:
    sleeps = []
    attempts = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "ok"

    policy = RetryPolicy(jitter=0.0, retryable=_transient)
    assert policy.call(flaky, sleep=sleeps.append) == "ok"
    assert sleeps == [5.0, 15.0]


def test_non_retryable_error_propagates_immediately() -> None:
    sleeps = []
    policy = RetryPolicy(retryable=_transient)

    def broken() -> None:
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        policy.call(broken, sleep=sleeps.append)
    assert sleeps == []


def test_exhaustion_reports_attempts_and_last_error() -> None:
    policy = RetryPolicy(max_attempts=2, jitter=0.0, retryable=_transient)

    def down() -> None:
        raise ConnectionError("still down")

    with pytest.raises(RetryExhausted) as exc:
        policy.call(down, sleep=lambda _: None)
    assert exc.value.attempts == 2
    assert isinstance(exc.value.last_error, ConnectionError)


def test_invalid_policy_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(jitter=1.5)
