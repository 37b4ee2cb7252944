from __future__ import annotations

from collections.abc import Iterator

import pytest
from fakes import NOW, FakeProvider, ManualScheduler

from shadowcal.state import State


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> Iterator[State]:
    st = State(":memory:", clock=lambda: NOW.timestamp())
    yield st
    st.close()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
