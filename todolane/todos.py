"""Todo lifecycle: create, update (including completion), delete, reorder.

A todo is either Active or Completed, and each state of each project is its
own ordered scope. Crossing between them always takes a fresh
``insert_at_top`` position in the destination scope. Completing a repeating
todo spawns its next occurrence inside the same transaction.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence
import logging

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import delete as sqlalchemy_delete

from .db import Database
from .errors import InvalidInput, NotFound
from .models import Project, Todo
from .positions import PositionStore, Scope
from .recurrence import next_due, normalize_recurrence
from .utils import clean_title, ensure_utc, now_utc, parse_due_date

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    'title', 'completed', 'due_date', 'recurrence_interval', 'recurrence_unit', 'project_id', 'position',
})


class TodoService:
    def __init__(
        self,
        db: Database,
        positions: Optional[PositionStore] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._db = db
        self._positions = positions or PositionStore()
        self._clock = clock

    async def list(self, project_id: Optional[int] = None) -> list[Todo]:
        q = select(Todo)
        if project_id is not None:
            q = q.where(Todo.project_id == project_id)
        q = q.order_by(Todo.project_id, Todo.completed, Todo.position, Todo.id)
        async with self._db.session() as sess:
            res = await sess.exec(q)
            return list(res.all())

    async def get(self, todo_id: int) -> Todo:
        async with self._db.session() as sess:
            return await self._get(sess, todo_id)

    async def _get(self, sess: AsyncSession, todo_id: int) -> Todo:
        todo = await sess.get(Todo, todo_id)
        if todo is None:
            raise NotFound(f'todo {todo_id} not found')
        return todo

    async def exists_external(self, external_uid: str) -> bool:
        async with self._db.session() as sess:
            res = await sess.exec(select(Todo.id).where(Todo.external_uid == external_uid))
            return res.first() is not None

    async def create(
        self,
        title: str,
        project_id: int,
        due_date: Any = None,
        recurrence_interval: Optional[int] = None,
        recurrence_unit: Optional[str] = None,
        *,
        external_uid: Optional[str] = None,
        at_bottom: bool = False,
    ) -> Todo:
        """Create an active todo.

        The todo goes to the top of the project's active list, or below every
        active item with ``at_bottom`` (feed ingestion, which keeps feed
        order).
        """
        title = clean_title(title)
        if project_id is None:
            raise InvalidInput('project_id is required')
        due = parse_due_date(due_date)
        interval, unit = normalize_recurrence(recurrence_interval, recurrence_unit)
        async with self._db.transaction() as sess:
            if await sess.get(Project, project_id) is None:
                raise NotFound(f'project {project_id} not found')
            todo = await self._insert(
                sess,
                title=title,
                project_id=project_id,
                due=due,
                interval=interval,
                unit=unit,
                external_uid=external_uid,
                at_bottom=at_bottom,
            )
        logger.debug('created todo %s in project %s at position %d', todo.id, project_id, todo.position)
        return todo

    async def _insert(
        self,
        sess: AsyncSession,
        *,
        title: str,
        project_id: int,
        due: Optional[datetime],
        interval: Optional[int],
        unit: Optional[str],
        external_uid: Optional[str] = None,
        at_bottom: bool = False,
    ) -> Todo:
        scope = Scope.todos(project_id, False)
        todo = Todo(
            title=title,
            completed=False,
            project_id=project_id,
            due_date=ensure_utc(due),
            recurrence_interval=interval,
            recurrence_unit=unit,
            external_uid=external_uid,
        )
        if at_bottom:
            # evaluated by the INSERT itself
            todo.position = self._positions.bottom_position_expr(scope)
        else:
            todo.position = await self._positions.insert_at_top(sess, scope)
        sess.add(todo)
        await sess.flush()
        if at_bottom:
            await sess.refresh(todo, attribute_names=['position'])
        return todo

    async def update(self, todo_id: int, fields: Mapping[str, Any]) -> Todo:
        """Apply ``fields`` to a todo.

        Only keys present in ``fields`` change; ``due_date`` set to None or ''
        clears it. Toggling ``completed`` moves the todo to the top of the
        other scope. Completing a repeating todo creates the next occurrence
        in the same transaction, so if that insert fails the todo stays
        active.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInput(f'unknown fields: {", ".join(sorted(unknown))}')
        if 'title' in fields:
            title = clean_title(fields['title'])
        if 'due_date' in fields:
            due = parse_due_date(fields['due_date'])
        if 'completed' in fields and not isinstance(fields['completed'], bool):
            raise InvalidInput('completed must be a boolean')

        async with self._db.transaction() as sess:
            todo = await self._get(sess, todo_id)
            was_completed = todo.completed
            source_project = todo.project_id

            if 'title' in fields:
                todo.title = title
            if 'due_date' in fields:
                todo.due_date = ensure_utc(due)
            if 'recurrence_interval' in fields or 'recurrence_unit' in fields:
                interval, unit = normalize_recurrence(
                    fields.get('recurrence_interval', todo.recurrence_interval),
                    fields.get('recurrence_unit', todo.recurrence_unit),
                )
                todo.recurrence_interval = interval
                todo.recurrence_unit = unit

            project_id = fields.get('project_id', source_project)
            if project_id is None:
                raise InvalidInput('project_id cannot be cleared')
            if project_id != source_project:
                if await sess.get(Project, project_id) is None:
                    raise NotFound(f'project {project_id} not found')
            completed = fields.get('completed', was_completed)

            if completed != was_completed or project_id != source_project:
                todo.position = await self._positions.insert_at_top(sess, Scope.todos(project_id, completed))
            elif fields.get('position') is not None:
                if isinstance(fields['position'], bool) or not isinstance(fields['position'], int):
                    raise InvalidInput('position must be an integer')
                todo.position = fields['position']
            todo.project_id = project_id

            if completed and not was_completed:
                completed_at = self._clock()
                todo.completed = True
                todo.completed_at = ensure_utc(completed_at)
                sess.add(todo)
                await sess.flush()
                if todo.recurrence_interval is not None and todo.recurrence_unit is not None:
                    base = ensure_utc(todo.due_date) or ensure_utc(completed_at)
                    nxt = next_due(base, todo.recurrence_interval, todo.recurrence_unit)
                    if nxt is not None:
                        await self._create_next_occurrence(sess, todo, nxt)
            elif was_completed and not completed:
                todo.completed = False
                todo.completed_at = None
            sess.add(todo)
            await sess.flush()
        return todo

    async def _create_next_occurrence(self, sess: AsyncSession, todo: Todo, due: datetime) -> Todo:
        nxt = await self._insert(
            sess,
            title=todo.title,
            project_id=todo.project_id,
            due=due,
            interval=todo.recurrence_interval,
            unit=todo.recurrence_unit,
        )
        logger.info('todo %s completed; next occurrence %s due %s', todo.id, nxt.id, due.isoformat())
        return nxt

    async def delete(self, todo_id: int) -> None:
        async with self._db.transaction() as sess:
            res = await sess.exec(sqlalchemy_delete(Todo).where(Todo.id == todo_id))
            if not res.rowcount:
                raise NotFound(f'todo {todo_id} not found')

    async def reorder(self, ordered_ids: Sequence[int]) -> list[Todo]:
        """Set the display order of one (project, completed) scope.

        The scope is taken from the todos named; all of them must share it and
        the list must cover the whole scope.
        """
        if not ordered_ids:
            raise InvalidInput('reorder payload must not be empty')
        async with self._db.transaction() as sess:
            first = await sess.get(Todo, ordered_ids[0]) if isinstance(ordered_ids[0], int) else None
            if first is None:
                raise InvalidInput(f'unknown todo id {ordered_ids[0]!r} in reorder payload')
            scope = Scope.todos(first.project_id, first.completed)
            await self._positions.set_explicit_order(sess, scope, ordered_ids)
        return await self.list(scope.project_id)
