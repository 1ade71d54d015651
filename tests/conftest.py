import pytest

from support import FixedClock


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
