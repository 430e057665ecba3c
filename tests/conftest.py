from __future__ import annotations

import pytest

from fakes import FakeLedger, RecordingSink, make_config, no_sleep
from valhalla_watcher.service import WatcherService
from valhalla_watcher.store import MemorySubscriberStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def ledger():
    return FakeLedger(head=100)


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def store():
    return MemorySubscriberStore()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def config():
    return make_config()


@pytest.fixture()
def service_factory(ledger, store, sink, clock):
    def _factory(**overrides):
        return WatcherService(make_config(**overrides), ledger, store, sink, clock=clock, sleep=no_sleep)

    return _factory
