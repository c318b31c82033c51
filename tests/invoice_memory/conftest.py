"""Fixtures for the invoice memory pipeline.

Every test gets a fresh in-memory SQLite database with the full schema. Wall
clock access is forbidden; tests pass an explicit logical ``now``.
"""

from __future__ import annotations

import datetime as _datetime
import os
import sys

import pytest

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from agents.invoice_memory.config import PipelineConfig  # noqa: E402
from agents.invoice_memory.pipeline import PipelineEngine  # noqa: E402
from tests.invoice_memory.builders import NOW, memory_engine, reference_payload  # noqa: E402


@pytest.fixture(autouse=True)
def freeze_datetime(monkeypatch):
    class _Frozen(_datetime.datetime):
        @classmethod
        def now(cls, tz=None):  # pragma: no cover - guard only
            raise AssertionError("datetime.now is forbidden in tests")

        @classmethod
        def utcnow(cls):  # pragma: no cover - guard only
            raise AssertionError("datetime.utcnow is forbidden in tests")

    monkeypatch.setattr(_datetime, "datetime", _Frozen)


@pytest.fixture
def engine():
    engine = memory_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def config():
    return PipelineConfig()


@pytest.fixture
def pipeline(engine, config):
    return PipelineEngine(engine, config)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def reference():
    return reference_payload()
