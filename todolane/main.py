from contextlib import asynccontextmanager
from typing import Optional
import logging
import sys

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .db import Database
from .errors import Conflict, InvalidInput, NotFound
from .feeds import FeedRefresher, FeedService
from .projects import ProjectService
from .schemas import (
    ProjectCreate,
    ProjectOut,
    ProjectUpdate,
    RefreshReport,
    ReorderRequest,
    SubscriptionCreate,
    SubscriptionOut,
    TodoCreate,
    TodoOut,
    TodoUpdate,
)
from .todos import TodoService

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from the package appear on the server console
# when no handlers are configured.
_pkg_logger = logging.getLogger('todolane')
if not _pkg_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    _pkg_logger.addHandler(handler)
_pkg_logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


def create_app(
    db: Optional[Database] = None,
    feed_transport: Optional[httpx.AsyncBaseTransport] = None,
    refresher_enabled: Optional[bool] = None,
) -> FastAPI:
    """Build the application with its services wired to ``db``.

    Services are attached to ``app.state`` here rather than in the lifespan
    so an app driven through ``httpx.ASGITransport`` (which does not run
    lifespan events) is fully usable once the database is initialized.
    """
    db = db or Database()
    if refresher_enabled is None:
        refresher_enabled = config.FEED_REFRESH_ENABLED

    projects = ProjectService(db)
    todos = TodoService(db)
    feeds = FeedService(db, todos, projects, transport=feed_transport)
    refresher = FeedRefresher(feeds, interval=config.FEED_REFRESH_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.init()
        logger.info('starting server using DATABASE_URL=%s', db.url)
        if refresher_enabled:
            refresher.start()
        else:
            logger.info('feed refresher disabled (set FEED_REFRESH_ENABLED=1 to enable)')
        try:
            yield
        finally:
            await refresher.stop()
            await db.dispose()

    app = FastAPI(title='todolane', lifespan=lifespan)
    app.state.db = db
    app.state.projects = projects
    app.state.todos = todos
    app.state.feeds = feeds
    app.state.refresher = refresher

    _install_error_handlers(app)
    _install_routes(app)
    return app


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidInput)
    async def _invalid_input(request: Request, exc: InvalidInput):
        return JSONResponse(status_code=400, content={'detail': str(exc)})

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={'detail': str(exc)})

    @app.exception_handler(Conflict)
    async def _conflict(request: Request, exc: Conflict):
        return JSONResponse(status_code=409, content={'detail': str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError):
        logger.error('storage error on %s %s', request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={'detail': 'storage error'})


def get_projects(request: Request) -> ProjectService:
    return request.app.state.projects


def get_todos(request: Request) -> TodoService:
    return request.app.state.todos


def get_feeds(request: Request) -> FeedService:
    return request.app.state.feeds


def get_refresher(request: Request) -> FeedRefresher:
    return request.app.state.refresher


def _install_routes(app: FastAPI) -> None:
    # projects

    @app.get('/api/projects', response_model=list[ProjectOut])
    async def list_projects(projects: ProjectService = Depends(get_projects)):
        return await projects.list()

    @app.post('/api/projects', response_model=ProjectOut, status_code=201)
    async def create_project(payload: ProjectCreate, projects: ProjectService = Depends(get_projects)):
        return await projects.create(payload.title)

    # declared before /{project_id} so "reorder" is not parsed as an id
    @app.put('/api/projects/reorder', response_model=list[ProjectOut])
    async def reorder_projects(payload: ReorderRequest, projects: ProjectService = Depends(get_projects)):
        return await projects.reorder(payload.ids)

    @app.get('/api/projects/{project_id}', response_model=ProjectOut)
    async def get_project(project_id: int, projects: ProjectService = Depends(get_projects)):
        return await projects.get(project_id)

    @app.put('/api/projects/{project_id}', response_model=ProjectOut)
    async def rename_project(
        project_id: int, payload: ProjectUpdate, projects: ProjectService = Depends(get_projects)
    ):
        return await projects.rename(project_id, payload.title)

    @app.delete('/api/projects/{project_id}', status_code=204)
    async def delete_project(project_id: int, projects: ProjectService = Depends(get_projects)):
        await projects.delete(project_id)
        return Response(status_code=204)

    # todos

    @app.get('/api/todos', response_model=list[TodoOut])
    async def list_todos(project_id: Optional[int] = None, todos: TodoService = Depends(get_todos)):
        return await todos.list(project_id)

    @app.post('/api/todos', response_model=TodoOut, status_code=201)
    async def create_todo(payload: TodoCreate, todos: TodoService = Depends(get_todos)):
        return await todos.create(
            payload.title,
            payload.project_id,
            due_date=payload.due_date,
            recurrence_interval=payload.recurrence_interval,
            recurrence_unit=payload.recurrence_unit,
        )

    @app.put('/api/todos/reorder', response_model=list[TodoOut])
    async def reorder_todos(payload: ReorderRequest, todos: TodoService = Depends(get_todos)):
        return await todos.reorder(payload.ids)

    @app.get('/api/todos/{todo_id}', response_model=TodoOut)
    async def get_todo(todo_id: int, todos: TodoService = Depends(get_todos)):
        return await todos.get(todo_id)

    @app.patch('/api/todos/{todo_id}', response_model=TodoOut)
    async def update_todo(todo_id: int, payload: TodoUpdate, todos: TodoService = Depends(get_todos)):
        fields = payload.model_dump(exclude_unset=True)
        return await todos.update(todo_id, fields)

    @app.delete('/api/todos/{todo_id}', status_code=204)
    async def delete_todo(todo_id: int, todos: TodoService = Depends(get_todos)):
        await todos.delete(todo_id)
        return Response(status_code=204)

    # calendar feeds

    @app.get('/api/feeds', response_model=list[SubscriptionOut])
    async def list_feeds(feeds: FeedService = Depends(get_feeds)):
        return await feeds.list_subscriptions()

    @app.post('/api/feeds', response_model=SubscriptionOut, status_code=201)
    async def subscribe_feed(
        payload: SubscriptionCreate,
        feeds: FeedService = Depends(get_feeds),
        refresher: FeedRefresher = Depends(get_refresher),
    ):
        sub = await feeds.subscribe(payload.url, payload.project_name)
        refresher.trigger(sub.id)
        return SubscriptionOut(
            id=sub.id,
            url=sub.url,
            project_id=sub.project_id,
            project_name=payload.project_name.strip(),
            last_synced_at=sub.last_synced_at,
        )

    @app.post('/api/feeds/refresh', response_model=RefreshReport)
    async def refresh_feeds(refresher: FeedRefresher = Depends(get_refresher)):
        return RefreshReport(results=await refresher.run_once())

    @app.delete('/api/feeds/{subscription_id}', status_code=204)
    async def cancel_feed(subscription_id: int, feeds: FeedService = Depends(get_feeds)):
        await feeds.cancel(subscription_id)
        return Response(status_code=204)


app = create_app()
