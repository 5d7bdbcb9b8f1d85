import mongomock
import pytest

from context import MarketApp
from database import ensure_indexes
from realtime import RealtimeHub


@pytest.fixture
def db():
    database = mongomock.MongoClient()["campus_market_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def hub():
    return RealtimeHub()


@pytest.fixture
def make_app(db, hub):
    apps = []

    def factory(**options):
        options.setdefault("page_delay", 0)
        options.setdefault("retry_delay", 0)
        app = MarketApp(db, hub, **options)
        apps.append(app)
        return app

    yield factory
    for app in apps:
        app.close()
