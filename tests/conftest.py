import sys
import os

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from treasury_service.config import Settings
from treasury_service.kv_store import MemoryKeyValueStore, MemoryTransactionLedger

from fakes import FakeConwayClient, RecordingNotifier


@pytest.fixture
def make_settings(tmp_path):
    """Settings factory that ignores any local .env file."""

    def _make(**overrides) -> Settings:
        values = dict(
            VULTISIG_OUTBOX_DIR=str(tmp_path / "outbox"),
            TREASURY_DB_DSN=f"sqlite+aiosqlite:///{tmp_path}/treasury.db",
            TREASURY_TELEGRAM_BOT_TOKEN="",
            TREASURY_TELEGRAM_CHAT_ID="",
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def ledger():
    return MemoryTransactionLedger()


@pytest.fixture
def conway_client():
    return FakeConwayClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()
