from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .utils import ensure_utc


class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ProjectCreate(BaseModel):
    title: str


class ProjectUpdate(BaseModel):
    title: str


class ProjectOut(_Out):
    id: int
    title: str
    position: int
    created_at: datetime

    @field_validator('created_at')
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class ReorderRequest(BaseModel):
    ids: list[int]


class TodoCreate(BaseModel):
    title: str
    project_id: int
    # validated by the service so bad values map to 400 rather than 422
    due_date: Optional[Any] = None
    recurrence_interval: Optional[int] = None
    recurrence_unit: Optional[str] = None


class TodoUpdate(BaseModel):
    """Partial update; only the fields present in the request body are applied."""
    title: Optional[str] = None
    completed: Optional[bool] = None
    due_date: Optional[Any] = None
    recurrence_interval: Optional[int] = None
    recurrence_unit: Optional[str] = None
    project_id: Optional[int] = None
    position: Optional[int] = None


class TodoOut(_Out):
    id: int
    title: str
    completed: bool
    created_at: datetime
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    recurrence_interval: Optional[int] = None
    recurrence_unit: Optional[str] = None
    position: int
    project_id: int
    external_uid: Optional[str] = None

    @field_validator('created_at', 'completed_at', 'due_date')
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class SubscriptionCreate(BaseModel):
    url: str
    project_name: str


class SubscriptionOut(_Out):
    id: int
    url: str
    project_id: int
    project_name: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    @field_validator('last_synced_at')
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class RefreshReport(BaseModel):
    # subscription id -> imported count, or error message for failed feeds
    results: dict[int, int | str]
