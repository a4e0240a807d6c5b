"""Shared fixtures for the netlog tests."""
import re

import pytest

import netlog

_RE_SGR = re.compile(r'\033\[[0-9;]*m')


def strip_ansi(text: str) -> str:
    return _RE_SGR.sub('', text)


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


@pytest.fixture
def vendors():
    return netlog.VendorIndex({
        '00000C': 'Cisco Systems, Inc',
        'AABBCC': 'Failover Networks',
    })


@pytest.fixture
def session(tmp_path, vendors):
    s = netlog.Session(tmp_path, vendors)
    s.load()
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_store():
    def _make(lines, cap=None):
        store = netlog.LineStore(cap=cap)
        store.extend(lines)
        return store
    return _make
