import logging
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers the tables on SQLModel.metadata

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and hands out sessions.

    One instance per application (or per test), kept on ``app.state``.
    """

    def __init__(self, url: str, echo: bool = False):
        if not url:
            raise ValueError("DATABASE_URL is not set. Please check your .env file.")

        connect_args = {}
        if make_url(url).get_backend_name() == "sqlite":
            # Writers queue on the database lock instead of failing immediately
            connect_args["timeout"] = 30

        self.url = url
        self.engine = create_async_engine(url, echo=echo, future=True, connect_args=connect_args)
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        async with self.engine.begin() as conn:
            # This creates the tables if they don't exist
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database initialized (%s)", self.engine.url.render_as_string(hide_password=True))

    async def dispose(self):
        await self.engine.dispose()


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    database: Database = request.app.state.database
    async with database.session_factory() as session:
        yield session
