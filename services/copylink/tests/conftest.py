"""Shared fixtures: temp SQLite DB, controllable clock, wired components."""

import pytest

from shared.logutil import LogUtil
from services.copylink.intel.db import CopyLinkDB
from services.copylink.intel.ingestion import EventIngestor
from services.copylink.intel.link_tokens import LinkTokenStore
from services.copylink.intel.manual_sync import ManualSync
from services.copylink.intel.reconciliation import ReconciliationEngine
from services.copylink.intel.secret_box import SecretBox
from services.copylink.intel.trust_registry import TrustRegistry

from .support import FakeClock, SESSION_SECRET


@pytest.fixture
def logger():
    return LogUtil("copylink-test")


@pytest.fixture
def db(tmp_path):
    return CopyLinkDB(str(tmp_path / "copylink.db"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def secret_key():
    return SecretBox.generate_key()


@pytest.fixture
def registry(db, secret_key, logger):
    return TrustRegistry(db, SecretBox(secret_key), logger)


@pytest.fixture
def store(db, registry, logger, clock):
    return LinkTokenStore(db, registry, logger, clock=clock)


@pytest.fixture
def engine(db, logger):
    return ReconciliationEngine(db, logger)


@pytest.fixture
def ingestor(db, registry, logger):
    return EventIngestor(db, registry, logger)


@pytest.fixture
def syncer(db, logger, clock):
    return ManualSync(db, logger, clock=clock)


@pytest.fixture
def config(tmp_path, secret_key):
    return {
        'APP_SESSION_SECRET': SESSION_SECRET,
        'COPYLINK_SECRET_KEY': secret_key,
        'COPYLINK_DB_PATH': str(tmp_path / "api.db"),
    }
