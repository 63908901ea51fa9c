"""
Shared fixtures: every test gets its own ledger and verification databases.
"""

import os
import tempfile

import pytest

from tip_ledger.config.loader import LedgerConfig, StorageConfig
from tip_ledger.core.events import TipLedger
from tip_ledger.storage.db import get_connection
from tip_ledger.storage.models import OwnershipShare


def build_config(temp_dir: str, **overrides) -> LedgerConfig:
    storage = StorageConfig(
        ledger_db=os.path.join(temp_dir, "ledger.db"),
        verification_db=os.path.join(temp_dir, "verification.db"),
    )
    return LedgerConfig(storage=storage, **overrides)


def execute_sql(db_path: str, statement: str, params=()) -> None:
    """Write straight to a store, bypassing the services (simulated tampering)."""
    conn = get_connection(db_path)
    try:
        conn.execute(statement, params)
    finally:
        conn.close()


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as directory:
        yield directory


@pytest.fixture
def ledger(temp_dir):
    return TipLedger.from_config(build_config(temp_dir))


@pytest.fixture
def funded(ledger):
    """alice holds 1000; track-1 is wholly owned by the registered artist."""
    ledger.register_account("alice", "alice")
    ledger.register_account("artist", "Nova Lines")
    ledger.register_session("party-1", "Friday Party")
    ledger.register_content(
        "track-1",
        "Midnight Drive",
        [OwnershipShare(payee_name="Nova Lines", percentage=100, user_id="artist")],
    )
    ledger.on_external_settlement("alice", 1000, "pi-alice-1")
    return ledger
