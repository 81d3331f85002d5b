from datetime import datetime, timezone

import pytest

from wallet_db_server import WalletDatabaseServer
from wallet_server import WalletApplicationServer

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class LocalWalletServer(WalletApplicationServer):
    """WAS wired straight to an in-process WDB instead of a Pyro5 proxy."""

    def __init__(self, db: WalletDatabaseServer, clock=None):
        self._db = db
        super().__init__(db_uri="local", clock=clock)

    def _call_db(self, method_name, *args, **kwargs):
        return getattr(self._db, method_name)(*args, **kwargs)


@pytest.fixture
def db(tmp_path):
    return WalletDatabaseServer(db_path=str(tmp_path / "wallet.db"))


@pytest.fixture
def server(db):
    return LocalWalletServer(db, clock=lambda: NOW)


@pytest.fixture
def tokens(server):
    """Session tokens for the three seeded users."""
    return {
        name: server.login(name, password)["token"]
        for name, password in (
            ("aisyah", "AisyahPass123"),
            ("daniel", "DanielPass456"),
            ("mei", "MeiPass789"),
        )
    }
