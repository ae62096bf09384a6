import os

import pytest

os.environ.setdefault("DEBUG_LOGGING", "false")

from mangahook_app.database import create_db_engine, init_database, make_session_factory
from sources import ProviderRegistry

from fakes import FakeConnector, FakeTransport


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_database(engine=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def native():
    return FakeConnector("mangadex")


@pytest.fixture
def aggregator():
    return FakeConnector("consumet", supports_update_order=False)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry(native, aggregator, transport):
    return ProviderRegistry(transport=transport, connectors=[native, aggregator])
