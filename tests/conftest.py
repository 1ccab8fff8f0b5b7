"""Shared fixtures for the pipeline tests."""

import pytest

from helpers import FakeClock, RecordingSleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)
