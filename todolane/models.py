from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import Index


class Project(SQLModel, table=True):
    """A named todo list. Position orders the project list (1-based, dense)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    position: int = Field(default=0, index=True)
    created_at: datetime = Field(default_factory=now_utc)


class Todo(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    completed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc)
    # Non-null exactly when completed is true.
    completed_at: Optional[datetime] = None
    # Always UTC.
    due_date: Optional[datetime] = None
    # Both set or both null; unit is stored lowercase singular (day/week/month/year).
    recurrence_interval: Optional[int] = None
    recurrence_unit: Optional[str] = None
    # Ordering within (project_id, completed). Ascending = top of list.
    # Not contiguous and may be negative.
    position: int = Field(default=0)
    project_id: int = Field(foreign_key="project.id", index=True)
    # Calendar event UID for todos imported from a feed; null for manual todos.
    external_uid: Optional[str] = Field(default=None, sa_column_kwargs={"unique": True})

    __table_args__ = (
        Index('ix_todo_scope_position', 'project_id', 'completed', 'position'),
    )


class FeedSubscription(SQLModel, table=True):
    """An external calendar (ICS) feed imported one-way into a project."""
    id: Optional[int] = Field(default=None, primary_key=True)
    url: str = Field(sa_column_kwargs={"unique": True})
    project_id: int = Field(foreign_key="project.id", index=True)
    # Null until the first completed sync.
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=now_utc)
