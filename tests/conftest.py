# tests/conftest.py
import os

# Plots are written to files only; never open a window during tests.
os.environ.setdefault("MPLBACKEND", "Agg")

import pytest  # noqa: E402

from config import Partition, RoundConfig, ValueRange  # noqa: E402
from mask_generator import MaskGenerator  # noqa: E402
from scheduler import Scheduler  # noqa: E402
from transport import SimulatedTransport  # noqa: E402

SCENARIO_READINGS = [100, 200, 150, 75]


@pytest.fixture
def scheduler():
    return Scheduler()


@pytest.fixture
def generator():
    return MaskGenerator(1234)


@pytest.fixture
def transport(scheduler):
    return SimulatedTransport(scheduler, MaskGenerator(99))


@pytest.fixture
def inbox(transport):
    """
    Register a recording receiver under an id. Returns a function
    listen(node_id) -> list that fills with (time, source, payload) tuples.
    """
    def listen(node_id):
        received = []
        transport.register(node_id, lambda payload, source: received.append(
            (transport.scheduler.now, source, payload)))
        return received
    return listen


@pytest.fixture
def offset_range():
    return ValueRange(-40, 40)


@pytest.fixture
def reading_range():
    return ValueRange(0, 100000)


@pytest.fixture
def config4():
    """Four members split odd/even between lead0 and lead1."""
    return RoundConfig(4, partition=Partition.odd_even(4))


@pytest.fixture
def readings4():
    return list(SCENARIO_READINGS)
