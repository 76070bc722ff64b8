"""Ordered-list positions shared by projects and todos.

A :class:`Scope` names one independently ordered list: the project list, or
the active / completed todos of a single project. Every position operation
takes a scope and the caller's session, so the surrounding
``Database.transaction()`` decides atomicity: a failure anywhere rolls all
position changes back together.

Positions only need to impose a strict order. ``insert_at_top`` hands out
``MIN - 1`` instead of renumbering the scope, so todo positions can be sparse
and negative.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import func
from sqlalchemy import update as sqlalchemy_update

from .errors import InvalidInput
from .models import Project, Todo


@dataclass(frozen=True)
class Scope:
    """One ordering: the project list when ``project_id`` is None, else the
    ``(project_id, completed)`` slice of the todo table."""
    project_id: Optional[int] = None
    completed: Optional[bool] = None

    def __post_init__(self):
        if (self.project_id is None) != (self.completed is None):
            raise ValueError('a todo scope needs both project_id and completed')

    @classmethod
    def projects(cls) -> "Scope":
        return cls()

    @classmethod
    def todos(cls, project_id: int, completed: bool) -> "Scope":
        return cls(project_id=project_id, completed=bool(completed))

    @property
    def is_project_list(self) -> bool:
        return self.project_id is None

    @property
    def model(self):
        return Project if self.is_project_list else Todo

    def conditions(self) -> list:
        if self.is_project_list:
            return []
        return [Todo.project_id == self.project_id, Todo.completed == self.completed]

    def __str__(self) -> str:
        if self.is_project_list:
            return 'projects'
        state = 'completed' if self.completed else 'active'
        return f'project {self.project_id} ({state})'


class PositionStore:
    """Relative (MIN/MAX based) position math over a :class:`Scope`."""

    async def min_position(self, sess: AsyncSession, scope: Scope) -> Optional[int]:
        model = scope.model
        res = await sess.exec(select(func.min(model.position)).where(*scope.conditions()))
        return res.one()

    async def max_position(self, sess: AsyncSession, scope: Scope) -> Optional[int]:
        model = scope.model
        res = await sess.exec(select(func.max(model.position)).where(*scope.conditions()))
        return res.one()

    async def ids_in_order(self, sess: AsyncSession, scope: Scope) -> list[int]:
        model = scope.model
        q = select(model.id).where(*scope.conditions()).order_by(model.position, model.id)
        res = await sess.exec(q)
        return list(res.all())

    async def shift_down(self, sess: AsyncSession, scope: Scope, amount: int = 1) -> int:
        """Add ``amount`` to every position in the scope; returns rows touched."""
        model = scope.model
        stmt = (
            sqlalchemy_update(model)
            .where(*scope.conditions())
            .values(position=model.position + amount)
            .execution_options(synchronize_session='fetch')
        )
        res = await sess.exec(stmt)
        return res.rowcount or 0

    async def insert_at_top(self, sess: AsyncSession, scope: Scope) -> int:
        """Position strictly above every row in the scope (0 when empty)."""
        current = await self.min_position(sess, scope)
        if current is None:
            return 0
        return current - 1

    async def append_at_bottom(self, sess: AsyncSession, scope: Scope) -> int:
        """``COALESCE(MAX(position), 0) + 1``."""
        current = await self.max_position(sess, scope)
        return (current or 0) + 1

    def bottom_position_expr(self, scope: Scope):
        """``append_at_bottom`` as a scalar subquery for use inside an INSERT.

        The database evaluates it while holding the write lock, so concurrent
        appends to the same scope cannot read the same MAX.
        """
        model = scope.model
        return (
            select(func.coalesce(func.max(model.position), 0) + 1)
            .where(*scope.conditions())
            .correlate(None)
            .scalar_subquery()
        )

    async def set_explicit_order(self, sess: AsyncSession, scope: Scope, ordered_ids: Sequence[int]) -> None:
        """Assign positions 1..n to ``ordered_ids`` in the given sequence.

        The list must name every row of the scope exactly once; a partial
        list would leave stale positions tied with the new ones.
        """
        ids = _validate_ids(ordered_ids)
        existing = set(await self.ids_in_order(sess, scope))
        unknown = [i for i in ids if i not in existing]
        if unknown:
            raise InvalidInput(f'ids {unknown} are not in {scope}')
        missing = sorted(existing.difference(ids))
        if missing:
            raise InvalidInput(f'reorder of {scope} must include every item; missing {missing}')
        model = scope.model
        for pos, item_id in enumerate(ids, start=1):
            stmt = (
                sqlalchemy_update(model)
                .where(model.id == item_id)
                .values(position=pos)
                .execution_options(synchronize_session='fetch')
            )
            await sess.exec(stmt)

    async def compact(self, sess: AsyncSession, scope: Scope) -> None:
        """Renumber the scope to 1..n keeping its current order."""
        ids = await self.ids_in_order(sess, scope)
        if ids:
            await self.set_explicit_order(sess, scope, ids)


def _validate_ids(ordered_ids: Iterable[int]) -> list[int]:
    if ordered_ids is None:
        raise InvalidInput('reorder payload is required')
    ids = list(ordered_ids)
    if not ids:
        raise InvalidInput('reorder payload must not be empty')
    seen: set[int] = set()
    for item_id in ids:
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise InvalidInput(f'invalid id {item_id!r} in reorder payload')
        if item_id in seen:
            raise InvalidInput(f'id {item_id} appears more than once in reorder payload')
        seen.add(item_id)
    return ids
