"""
Shared fixtures: a controllable clock and services over an in-memory store.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import AppConfig
from conversation import ConversationProcessor
from storage import InMemoryDocumentStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def processor(store, clock):
    """Fully wired services; analytics flush on every event."""
    config = AppConfig(analytics_batch_size=1)
    return ConversationProcessor.build(store, config, clock=clock)


@pytest.fixture
def sessions(processor):
    return processor.sessions


@pytest.fixture
def context(processor):
    return processor.context


@pytest.fixture
def turns(processor):
    return processor.turns


@pytest.fixture
def rules(processor):
    return processor.rules
