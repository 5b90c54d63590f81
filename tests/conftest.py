"""Pytest bootstrap configuration.

Environment defaults must be in place before application settings are
imported, so they are set at module import time.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CELERY__BROKER_URL", "memory://")

import pytest

from tests.fakes import (
    InMemoryLedgerStore,
    RecordingNotifier,
    RecordingSleep,
    make_fake_uow_factory,
)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def uow_factory(store):
    return make_fake_uow_factory(store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()
