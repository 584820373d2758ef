from datetime import datetime, timezone

import pytest

from photoforge import config
from photoforge.db import Database, init_db
from photoforge.ledger import CreditLedger


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "photoforge.db"
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config.settings, "app_env", "dev")
    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "upload_dir", str(upload_dir))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "queue_backend", "sqlite")
    monkeypatch.setattr(config.settings, "max_images_per_job", 100)
    monkeypatch.setattr(config.settings, "cron_secret", "")

    init_db(Database(str(db_path)))
    yield


@pytest.fixture
def database() -> Database:
    return Database(config.settings.database_path)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(database, clock) -> CreditLedger:
    return CreditLedger(database, clock=clock)
