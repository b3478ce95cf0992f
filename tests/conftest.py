"""Pytest configuration and shared fixtures for CSA tests.

This module provides auto-use fixtures that ensure test isolation,
particularly for cache directories, plus small trace builders.
"""

import shutil
import tempfile

import pytest

from callstack_anomaly.models import CallInterval


@pytest.fixture(autouse=True)
def isolate_cache_directory(monkeypatch):
    """Auto-use fixture that isolates cache directory for each test.

    This fixture:
    1. Creates a temporary directory for the test's cache
    2. Sets CSA_CACHE_DIR environment variable to point to it
    3. Cleans up the directory after the test completes

    It also clears the CSA_* analysis defaults so the environment of the
    machine running the tests does not leak into them.
    """
    temp_cache_dir = tempfile.mkdtemp(prefix='csa_test_cache_')

    monkeypatch.setenv('CSA_CACHE_DIR', temp_cache_dir)
    for key in ('CSA_ARRAY_ENCODING', 'CSA_COMPRESSION', 'CSA_N_VALUE', 'CSA_ANOMALY_THRESHOLD'):
        monkeypatch.delenv(key, raising=False)

    yield temp_cache_dir

    shutil.rmtree(temp_cache_dir, ignore_errors=True)


@pytest.fixture
def temp_cache_dir(isolate_cache_directory):
    """Fixture that provides access to the isolated cache directory path.

    Returns:
        str: Path to the temporary cache directory for this test
    """
    return isolate_cache_directory


def interval(start: int, length: int, depth: int, symbol: int) -> CallInterval:
    return CallInterval(start=start, length=length, depth=depth, symbol=symbol)


def outlier_trace() -> list[CallInterval]:
    """Two root calls at depth 2 under one depth-1 call, each with one child at depth 3.

    Both children start 10 after their root; the second child runs 10x longer
    (100 vs 10). The second root is longer by the same amount, so both roots
    keep a self-time of 990 and only the child self-time differs.
    """
    return [
        interval(0, 10_000, 1, 0x1),
        interval(100, 1_000, 2, 0x10),
        interval(2_000, 1_090, 2, 0x10),
        interval(110, 10, 3, 0x20),
        interval(2_010, 100, 3, 0x20),
    ]


class ConstantModel:
    """Picklable model returning a fixed score and recording its inputs."""

    def __init__(self, value: float = 0.25):
        self.value = value
        self.inputs = []

    def score(self, features):
        self.inputs.append(features)
        return self.value


class SumModel:
    """Picklable model scoring 1.0 when the features sum above a limit."""

    def __init__(self, limit: float):
        self.limit = limit

    def score(self, features):
        return 1.0 if float(features.sum()) > self.limit else 0.0
