"""
Shared fixtures for the turn engine tests
"""

import pytest

from buddy.dialogue import Decision, Mode, Prosody
from buddy.store import InMemoryStore

from fakes import MutableClock, local_ms


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def noon_clock():
    """Clock fixed at 12:00 UTC, outside the default bedtime window"""
    return MutableClock(local_ms("UTC", 2024, 5, 1, 12, 0))


@pytest.fixture
def chat_decision():
    return Decision(mode=Mode.CHAT, tok_max=90, need_clarify=False, prosody=Prosody.NEUTRAL)
