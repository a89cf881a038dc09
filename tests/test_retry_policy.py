import pytest
from pymongo.errors import AutoReconnect, ConnectionFailure

from examflow.errors import RetryTimeoutError
from examflow.services.retry import EXAM_SUBMISSION, RetryConfig, RetryPolicy, is_transient_error


class Recorder:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def _flaky(failures, error=ConnectionError("connection reset")):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error
        return "saved"

    return operation, calls


async def test_transient_failures_are_retried_with_backoff():
    recorder = Recorder()
    policy = RetryPolicy(sleep=recorder.sleep, rand=lambda: 0.0)
    operation, calls = _flaky(2)

    assert await policy.execute(operation, EXAM_SUBMISSION) == "saved"
    assert calls["count"] == 3
    assert recorder.sleeps == [0.5, 1.0]


async def test_non_transient_error_is_not_retried():
    recorder = Recorder()
    policy = RetryPolicy(sleep=recorder.sleep)
    operation, calls = _flaky(5, ValueError("bad payload"))

    with pytest.raises(ValueError):
        await policy.execute(operation)

    assert calls["count"] == 1
    assert recorder.sleeps == []


async def test_gives_up_after_max_attempts():
    policy = RetryPolicy(sleep=Recorder().sleep, rand=lambda: 0.0)
    operation, calls = _flaky(10, AutoReconnect("primary stepped down"))

    with pytest.raises(AutoReconnect):
        await policy.execute(operation, EXAM_SUBMISSION)

    assert calls["count"] == EXAM_SUBMISSION.max_attempts


async def test_overall_timeout_stops_retrying():
    ticks = iter([0.0, 0.0, 100.0])
    policy = RetryPolicy(sleep=Recorder().sleep, clock=lambda: next(ticks))
    operation, calls = _flaky(10)

    with pytest.raises(RetryTimeoutError) as excinfo:
        await policy.execute(operation, RetryConfig(max_attempts=5, timeout=30.0))

    assert calls["count"] == 1
    assert excinfo.value.attempts == 1
    assert isinstance(excinfo.value.last_error, ConnectionError)


def test_delay_is_capped_and_jittered():
    config = RetryConfig(initial_delay=1.0, max_delay=4.0, backoff_multiplier=2.0)
    policy = RetryPolicy(rand=lambda: 1.0)

    assert policy.base_delay(1, config) == 1.0
    assert policy.base_delay(3, config) == 4.0
    assert policy.base_delay(10, config) == 4.0
    assert policy.delay_for(2, config) == pytest.approx(2.6)


@pytest.mark.parametrize("error, transient", [
    (ConnectionFailure("down"), True),
    (TimeoutError(), True),
    (Exception("Rate limit exceeded (429)"), True),
    (Exception("ECONNRESET while writing"), True),
    (ValueError("Missing exam ID"), False),
    (RetryTimeoutError(31.0, 3), False),
])
def test_transient_classification(error, transient):
    assert is_transient_error(error) is transient


async def test_auto_save_failure_is_reported_not_raised():
    policy = RetryPolicy(sleep=Recorder().sleep)

    async def save(payload):
        raise ConnectionError("network unreachable")

    result = await policy.retry_auto_save(save, {"answers": {}})

    assert result["success"] is False
    assert "network unreachable" in result["error"]
