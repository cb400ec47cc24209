from typing import Generator

import pytest
import respx
from fastapi.testclient import TestClient

from fedbox.config import Config
from fedbox.database import Base
from fedbox.database import Database
from fedbox.httpsig import _KEY_CACHE
from fedbox.main import create_app
from fedbox.webfinger import _WEBFINGER_CACHE
from tests.factories import _Session


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        host="local.test",
        sqlalchemy_database=str(tmp_path / "fedbox.db"),
        # Remote servers are mocked, skip the DNS based checks
        debug=True,
    )


@pytest.fixture
def database(config: Config) -> Database:
    return Database(config)


@pytest.fixture(autouse=True)
def clear_caches() -> Generator:
    _KEY_CACHE.clear()
    _WEBFINGER_CACHE.clear()
    yield


@pytest.fixture
def respx_mock() -> Generator:
    # Unmatched requests get an empty 200, which is not ActivityPub data
    with respx.mock(assert_all_called=False, assert_all_mocked=False) as mock:
        yield mock


@pytest.fixture
async def async_db_session(database: Database):
    async with database.async_session() as session:
        async with database.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield session
        await session.close()
        async with database.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await database.async_engine.dispose()


@pytest.fixture
def db(database: Database) -> Generator:
    Base.metadata.create_all(bind=database.engine)
    _Session.remove()
    _Session.configure(bind=database.engine)
    try:
        yield _Session
    finally:
        _Session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def client(config: Config, db) -> Generator:
    with TestClient(create_app(config)) as c:
        yield c
