import logging
from pathlib import Path

import pytest

from helpers import Capture, FakeGenerator, FlakyPersistence, cluster_params
from stolos_bootstrap.state.store import ClusterStateStore


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def persistence(tmp_path: Path):
    return FlakyPersistence(tmp_path)


@pytest.fixture
def store(persistence):
    s = ClusterStateStore(persistence)
    s.set_cluster_parameters(cluster_params())
    return s


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def restore_stolos_logger():
    """init_logging reconfigures the shared logger; put it back afterwards."""
    logger = logging.getLogger("stolos")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for h in logger.handlers:
        if h not in handlers:
            h.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
