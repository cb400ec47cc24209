from typing import Any
from typing import AsyncGenerator

import fastapi
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from fedbox.config import Config

Base: Any = declarative_base()


class Database:
    """Sync and async engines bound to the configured SQLite file."""

    def __init__(self, config: Config) -> None:
        db_path = config.db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 15},
        )
        self.session_local = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )

        self.async_engine = create_async_engine(
            f"sqlite+aiosqlite:///{db_path}",
            future=True,
            echo=config.debug,
            connect_args={"timeout": 15},
        )
        self.async_session = sessionmaker(
            self.async_engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_all(self) -> None:
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)


async def get_db_session(
    request: fastapi.Request,
) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.database.async_session() as session:
        try:
            yield session
        finally:
            await session.close()
