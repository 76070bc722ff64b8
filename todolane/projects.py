from __future__ import annotations

from typing import Optional, Sequence
import logging

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import delete as sqlalchemy_delete

from .db import Database
from .errors import NotFound
from .models import FeedSubscription, Project, Todo
from .positions import PositionStore, Scope
from .utils import clean_title

logger = logging.getLogger(__name__)


class ProjectService:
    def __init__(self, db: Database, positions: Optional[PositionStore] = None):
        self._db = db
        self._positions = positions or PositionStore()

    async def list(self) -> list[Project]:
        async with self._db.session() as sess:
            res = await sess.exec(select(Project).order_by(Project.position, Project.id))
            return list(res.all())

    async def get(self, project_id: int) -> Project:
        async with self._db.session() as sess:
            return await self._get(sess, project_id)

    async def _get(self, sess: AsyncSession, project_id: int) -> Project:
        project = await sess.get(Project, project_id)
        if project is None:
            raise NotFound(f'project {project_id} not found')
        return project

    async def create(self, title: str) -> Project:
        title = clean_title(title)
        async with self._db.transaction() as sess:
            project = await self.add_at_bottom(sess, title)
        logger.info('created project %s %r at position %d', project.id, project.title, project.position)
        return project

    async def add_at_bottom(self, sess: AsyncSession, title: str) -> Project:
        position = await self._positions.append_at_bottom(sess, Scope.projects())
        project = Project(title=title, position=position)
        sess.add(project)
        await sess.flush()
        return project

    async def find_or_create(self, sess: AsyncSession, title: str) -> Project:
        res = await sess.exec(select(Project).where(Project.title == title).order_by(Project.id))
        project = res.first()
        if project is not None:
            return project
        return await self.add_at_bottom(sess, title)

    async def rename(self, project_id: int, title: str) -> Project:
        title = clean_title(title)
        async with self._db.transaction() as sess:
            project = await self._get(sess, project_id)
            project.title = title
            sess.add(project)
        return project

    async def delete(self, project_id: int) -> None:
        """Delete the project with its todos and feed subscriptions."""
        async with self._db.transaction() as sess:
            project = await self._get(sess, project_id)
            await self.delete_cascade(sess, project)
            await self._positions.compact(sess, Scope.projects())
        logger.info('deleted project %s', project_id)

    async def delete_cascade(self, sess: AsyncSession, project: Project) -> None:
        await sess.exec(sqlalchemy_delete(Todo).where(Todo.project_id == project.id))
        await sess.exec(sqlalchemy_delete(FeedSubscription).where(FeedSubscription.project_id == project.id))
        await sess.exec(sqlalchemy_delete(Project).where(Project.id == project.id))

    async def reorder(self, ordered_ids: Sequence[int]) -> list[Project]:
        async with self._db.transaction() as sess:
            await self._positions.set_explicit_order(sess, Scope.projects(), ordered_ids)
        return await self.list()
