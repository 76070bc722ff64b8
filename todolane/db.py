from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import os
import logging

from . import config
from . import models  # noqa: F401  register tables on SQLModel.metadata

logger = logging.getLogger(__name__)


def _sqlite_path_from_url(url: str | None) -> str | None:
    if not url:
        return None
    if url.startswith('sqlite+aiosqlite:///'):
        path = url.replace('sqlite+aiosqlite:///', '', 1)
    elif url.startswith('sqlite:///'):
        path = url.replace('sqlite:///', '', 1)
    else:
        return None
    if not path or path == ':memory:':
        return None
    if path.startswith('./'):
        path = path[2:]
    return os.path.abspath(path)


def _enable_sqlite_foreign_keys(dbapi_con, con_record):
    cur = dbapi_con.cursor()
    try:
        cur.execute('PRAGMA foreign_keys=ON')
    finally:
        cur.close()


class Database:
    """Storage handle shared by the services and the feed worker.

    Each service receives the handle explicitly so tests can run against an
    isolated database file.
    """

    def __init__(self, url: str | None = None, echo: bool = False):
        self.url = url or config.DATABASE_URL
        self.engine = create_async_engine(self.url, echo=echo, future=True, poolclass=NullPool)
        if self.url.startswith('sqlite'):
            event.listen(self.engine.sync_engine, 'connect', _enable_sqlite_foreign_keys)
        self._sessionmaker = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    def session(self) -> AsyncSession:
        return self._sessionmaker()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session whose work is committed on success.

        Any exception rolls the whole unit back and is re-raised, so partial
        multi-row updates are never persisted.
        """
        async with self.session() as sess:
            try:
                yield sess
                await sess.commit()
            except BaseException:
                await sess.rollback()
                raise

    async def init(self) -> None:
        db_path = _sqlite_path_from_url(self.url)
        if db_path:
            os.makedirs(os.path.dirname(db_path) or '.', exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info('database ready at %s', self.url)

    async def dispose(self) -> None:
        await self.engine.dispose()
