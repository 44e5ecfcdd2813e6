from types import SimpleNamespace

import pytest

from fi_scanner.utils import RetryPolicy, retry, retry_on


class DummyWorker:
    def __init__(self, policy: RetryPolicy):
        self.retry_policy = policy
        self.calls = 0

    @retry()
    def flaky(self) -> str:
        self.calls += 1
        if self.calls < 3:
            raise TimeoutError("boom")
        return "ok"

    @retry()
    def broken(self) -> None:
        self.calls += 1
        raise KeyError("not retryable")


def _policy(sleeps, max_attempts=6, jitter=0.0):
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=2.0,
        max_delay=60.0,
        jitter=jitter,
        is_retryable=retry_on(TimeoutError),
        sleep=sleeps.append,
    )


def test_retry_succeeds_after_two_timeouts_with_backoff():
    sleeps = []
    worker = DummyWorker(_policy(sleeps))

    assert worker.flaky() == "ok"
    assert worker.calls == 3
    assert sleeps == [2.0, 4.0]


def test_retry_raises_after_max_attempts():
    sleeps = []
    policy = _policy(sleeps, max_attempts=3)
    calls = []

    def always_times_out():
        calls.append(1)
        raise TimeoutError("nope")

    with pytest.raises(TimeoutError):
        policy.call(always_times_out)

    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]


def test_non_retryable_error_is_raised_immediately():
    sleeps = []
    worker = DummyWorker(_policy(sleeps))

    with pytest.raises(KeyError):
        worker.broken()

    assert worker.calls == 1
    assert sleeps == []


def test_delay_is_capped_and_jittered(mocker):
    mocker.patch("fi_scanner.utils.random.uniform", return_value=0.25)
    policy = RetryPolicy(base_delay=2.0, max_delay=10.0, jitter=0.3)

    assert policy.delay_for(1) == pytest.approx(2.25)
    assert policy.delay_for(3) == pytest.approx(8.25)
    assert policy.delay_for(10) == pytest.approx(10.25)


def test_from_settings_reads_retry_knobs():
    settings = SimpleNamespace(MAX_RETRIES=4, RETRY_BASE_DELAY=1.5, MAX_RETRY_BACKOFF_SECONDS=9)

    policy = RetryPolicy.from_settings(settings, retry_on(ValueError))

    assert policy.max_attempts == 4
    assert policy.base_delay == 1.5
    assert policy.max_delay == 9
    assert policy.is_retryable(ValueError())
    assert not policy.is_retryable(TypeError())


def test_with_predicate_keeps_backoff():
    policy = RetryPolicy(max_attempts=2, base_delay=3.0, is_retryable=retry_on(ValueError))

    other = policy.with_predicate(retry_on(OSError))

    assert other.max_attempts == 2
    assert other.base_delay == 3.0
    assert other.is_retryable(OSError())
    assert not other.is_retryable(ValueError())


def test_zero_attempts_is_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
