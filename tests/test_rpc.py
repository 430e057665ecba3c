from __future__ import annotations

import asyncio

import pytest

from fakes import no_sleep
from valhalla_watcher.errors import RpcError, RpcRetryExhausted
from valhalla_watcher.rpc import BackoffPolicy, call_with_retry, is_retryable, vera_from_result


class Flaky:
    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_backoff_delay_is_capped_exponential_plus_jitter():
    policy = BackoffPolicy(attempts=5, base_delay=0.25, max_delay=2.0, jitter=0.1)
    assert policy.delay(0, rng=lambda: 0.0) == pytest.approx(0.25)
    assert policy.delay(2, rng=lambda: 0.0) == pytest.approx(1.0)
    assert policy.delay(6, rng=lambda: 0.0) == pytest.approx(2.0)
    assert policy.delay(0, rng=lambda: 1.0) == pytest.approx(0.35)


@pytest.mark.parametrize(
    "exc",
    [
        TimeoutError("read"),
        ConnectionResetError("peer"),
        ValueError("429 Too Many Requests"),
        ValueError("{'code': -32005, 'message': 'limit exceeded'}"),
        ValueError("502 Bad Gateway"),
        ValueError("missing response for request"),
    ],
)
def test_transient_failures_are_retryable(exc):
    assert is_retryable(exc)


def test_contract_reverts_are_not_retryable():
    assert not is_retryable(ValueError("execution reverted: not found"))


def test_retry_then_succeed():
    fn = Flaky([TimeoutError("t1"), ValueError("rate limit")], result=7)
    delays = []

    async def record(delay):
        delays.append(delay)

    policy = BackoffPolicy(attempts=5, jitter=0.0)
    assert asyncio.run(call_with_retry(fn, "getBlockNumber", policy, record)) == 7
    assert fn.calls == 3
    assert delays == [pytest.approx(0.25), pytest.approx(0.5)]


def test_non_retryable_raises_immediately():
    fn = Flaky([ValueError("execution reverted")])
    with pytest.raises(RpcError) as info:
        asyncio.run(call_with_retry(fn, "getVera:5", BackoffPolicy(), no_sleep))
    assert fn.calls == 1
    assert not isinstance(info.value, RpcRetryExhausted)
    assert info.value.label == "getVera:5"
    assert "execution reverted" in info.value.message


def test_exhaustion_raises_retry_exhausted():
    fn = Flaky([TimeoutError("t")] * 10)
    with pytest.raises(RpcRetryExhausted) as info:
        asyncio.run(call_with_retry(fn, "getLogs:1-2", BackoffPolicy(attempts=3), no_sleep))
    assert fn.calls == 3
    assert info.value.attempts == 3
    assert "exhausted after 3 attempts" in str(info.value)


def test_vera_from_positional_result():
    detail = vera_from_result(9, (4, 12, 1, (1, 2, 3, 4, 5, 6)))
    assert detail.vera_id == 9
    assert detail.level == 4
    assert detail.species_id == 12
    assert detail.personality == 1
    assert detail.innate.total() == 21
