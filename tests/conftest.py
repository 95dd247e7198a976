import os
import sys
from datetime import timedelta
from importlib import import_module, reload
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Dependency order: every module is re-executed after the ones it imports from.
RELOAD_ORDER = [
    "puosu.logging_config",
    "puosu.config",
    "puosu.helpers",
    "puosu.errors",
    "puosu.result",
    "puosu.database",
    "puosu.models.models",
    "puosu.db",
    "puosu.ledger",
    "puosu.payouts",
    "puosu.state_machine",
    "puosu.results",
    "puosu.settlement",
    "puosu.disputes",
    "puosu.orchestrator",
    "puosu.diagnostics",
    "puosu.clients.game_stats_client",
    "puosu.simulation",
    "puosu.trending",
    "puosu.health",
    "puosu.reconciliation",
    "puosu.security",
    "puosu.schemas",
    "puosu.main",
    "puosu.commands.reconcile",
    "puosu.commands.sweep",
]


@pytest.fixture(scope="function")
def app_module(tmp_path_factory):
    """
    Reload the app with a disposable SQLite DB and disable background workers.
    """
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    new_env = {
        "DB_URL": f"sqlite:///{db_path}",
        "BEARER_TOKEN": "testtoken",
        "GAME_STATS_BASE_URL": "http://mock-game-stats:8003",
        "AUTOMATION_ENABLED": "false",
    }
    old_env = {k: os.environ.get(k) for k in new_env}
    os.environ.update(new_env)

    try:
        # Import everything before reloading so models register on a single Base.
        for name in RELOAD_ORDER:
            import_module(name)
        modules = {name: reload(import_module(name)) for name in RELOAD_ORDER}
        main = modules["puosu.main"]
        database = modules["puosu.database"]
        models = modules["puosu.models.models"]

        # Disable the endless background worker during tests.
        main.app.router.on_startup.clear()
        main.app.dependency_overrides[main.require_bearer_token] = lambda: None

        models.Base.metadata.drop_all(bind=database.engine)
        models.Base.metadata.create_all(bind=database.engine)
        return main, database, models
    finally:
        for key, value in old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


@pytest.fixture
def client(app_module):
    main, database, models = app_module
    with TestClient(main.app) as client:
        yield client


class Seeder:
    """Writes fixture rows through their own committed sessions and hands back ids."""

    def __init__(self, database, models):
        self.database = database
        self.models = models

    def _add(self, record):
        with self.database.SessionLocal() as db:
            db.add(record)
            db.commit()
            db.refresh(record)
            return record

    def profile(self, balance=100.0, is_test_account=False, is_premium=False, premium_expires_at=None, username="player"):
        from puosu.helpers import to_cents

        record = self._add(
            self.models.Profile(
                username=username,
                wallet_balance_cents=to_cents(balance),
                is_test_account=is_test_account,
                is_premium=is_premium,
                premium_expires_at=premium_expires_at,
            )
        )
        return record.user_id

    def profiles(self, count, balance=100.0, **kwargs):
        return [self.profile(balance=balance, username=f"player-{i}", **kwargs) for i in range(count)]

    def game(self, name="valorant", title="Valorant", is_active=True):
        return self._add(self.models.Game(name=name, title=title, is_active=is_active)).id

    def challenge(
        self,
        stake=5.0,
        max_participants=2,
        challenge_type="1v1",
        status="open",
        game_id=None,
        start_time=None,
        title="Test Challenge",
    ):
        from puosu.helpers import to_cents

        record = self._add(
            self.models.Challenge(
                title=title,
                challenge_type=challenge_type,
                stake_cents=to_cents(stake),
                max_participants=max_participants,
                status=status,
                game_id=game_id,
                start_time=start_time,
            )
        )
        return record.id

    def tournament(
        self,
        entry_fee=5.0,
        max_participants=8,
        status="registration_open",
        registration_start=None,
        registration_end=None,
        automation_enabled=True,
        tournament_type=None,
        name="Test Cup",
    ):
        from puosu.helpers import to_cents, utcnow

        now = utcnow()
        registration_start = registration_start or now - timedelta(minutes=10)
        record = self._add(
            self.models.Tournament(
                name=name,
                entry_fee_cents=to_cents(entry_fee),
                max_participants=max_participants,
                status=status,
                registration_start=registration_start,
                registration_end=registration_end or registration_start + timedelta(minutes=45),
                automation_enabled=automation_enabled,
                tournament_type=tournament_type,
            )
        )
        return record.id

    def balance(self, user_id):
        with self.database.SessionLocal() as db:
            return db.get(self.models.Profile, user_id).wallet_balance_cents

    def get(self, model, pk):
        with self.database.SessionLocal() as db:
            record = db.get(model, pk)
            db.expunge(record)
            return record


@pytest.fixture
def seed(app_module):
    _, database, models = app_module
    return Seeder(database, models)
