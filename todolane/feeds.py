"""One-way import of calendar (ICS) feeds into todos.

Each subscription owns a project. A sync fetches the feed, expands events
inside a bounded window and creates a todo for every event UID that has not
been imported before. The UID is stored on the todo, so running a sync again
only adds new events. Failures are contained to the subscription being
synced; the next pass retries it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from typing import Callable, Optional
import asyncio
import logging

import httpx
import icalendar
import recurring_ical_events
from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .db import Database
from .errors import Conflict, FeedFetchError, FeedParseError, InvalidInput, NotFound
from .models import FeedSubscription, Project, Todo
from .positions import PositionStore, Scope
from .projects import ProjectService
from .todos import TodoService
from .utils import clean_title, ensure_utc, local_midnight_utc, now_utc, resolve_local_timezone, to_local

logger = logging.getLogger(__name__)

UNTITLED_EVENT = '(untitled event)'


@dataclass(frozen=True)
class FeedEvent:
    uid: Optional[str]
    summary: Optional[str]
    # date for all-day events, datetime (aware or floating) for timed ones
    start: date | datetime | None


@dataclass(frozen=True)
class SubscriptionView:
    id: int
    url: str
    project_id: int
    project_name: str
    last_synced_at: Optional[datetime]


def feed_window(now: datetime, local_tz: tzinfo | None, years: int = 2) -> tuple[datetime, datetime]:
    """Start of today (local time) through Dec 31 ``years`` years out (UTC)."""
    today = to_local(now, local_tz).date()
    start = local_midnight_utc(today, local_tz)
    end = datetime(today.year + years, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return start, end


def parse_feed(body: bytes, start: datetime, end: datetime) -> list[FeedEvent]:
    """Expand the VEVENTs of an ICS document that fall inside [start, end)."""
    try:
        calendar = icalendar.Calendar.from_ical(body)
        components = recurring_ical_events.of(calendar).between(start, end)
    except Exception as exc:
        raise FeedParseError(f'could not parse calendar: {exc}') from exc
    events = []
    for component in components:
        if component.name != 'VEVENT':
            continue
        uid = component.get('UID')
        summary = component.get('SUMMARY')
        dtstart = component.get('DTSTART')
        events.append(FeedEvent(
            uid=str(uid).strip() if uid is not None else None,
            summary=str(summary).strip() if summary is not None else None,
            start=dtstart.dt if dtstart is not None else None,
        ))
    return events


def event_due_date(start, local_tz: tzinfo | None) -> Optional[datetime]:
    """UTC due date for an event start.

    A start at exactly midnight is taken to be an all-day event: its date is
    read as a local calendar date and local midnight is converted to UTC.
    Any other start instant is converted to UTC directly.
    """
    if start is None:
        return None
    if not isinstance(start, datetime):
        return local_midnight_utc(start, local_tz)
    if start.tzinfo is None:
        # floating time: wall clock in the local zone
        if local_tz is None:
            start = start.astimezone()
        else:
            start = start.replace(tzinfo=local_tz)
    if start.time() == time(0, 0, 0):
        return local_midnight_utc(start.date(), local_tz)
    return start.astimezone(timezone.utc)


def _fetch_url(url: str) -> str:
    if url.lower().startswith('webcal://'):
        return 'https://' + url[len('webcal://'):]
    return url


class FeedService:
    def __init__(
        self,
        db: Database,
        todos: TodoService,
        projects: ProjectService,
        *,
        positions: Optional[PositionStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = config.FEED_FETCH_TIMEOUT_SECONDS,
        local_tz: tzinfo | None = None,
        window_years: int = config.FEED_WINDOW_YEARS,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._db = db
        self._todos = todos
        self._projects = projects
        self._positions = positions or PositionStore()
        self._transport = transport
        self._timeout = timeout
        self._local_tz = local_tz if local_tz is not None else resolve_local_timezone(config.LOCAL_TIMEZONE)
        self._window_years = window_years
        self._clock = clock

    async def list_subscriptions(self) -> list[SubscriptionView]:
        q = (
            select(FeedSubscription, Project.title)
            .join(Project, Project.id == FeedSubscription.project_id)
            .order_by(FeedSubscription.id)
        )
        async with self._db.session() as sess:
            res = await sess.exec(q)
            return [
                SubscriptionView(
                    id=sub.id,
                    url=sub.url,
                    project_id=sub.project_id,
                    project_name=title,
                    last_synced_at=sub.last_synced_at,
                )
                for sub, title in res.all()
            ]

    async def get_subscription(self, subscription_id: int) -> FeedSubscription:
        async with self._db.session() as sess:
            sub = await sess.get(FeedSubscription, subscription_id)
        if sub is None:
            raise NotFound(f'subscription {subscription_id} not found')
        return sub

    async def subscribe(self, url: str, project_name: str) -> FeedSubscription:
        """Register a feed, reusing a project with the same title if one exists."""
        url = (url or '').strip()
        if not url:
            raise InvalidInput('url is required')
        if not url.lower().startswith(('http://', 'https://', 'webcal://')):
            raise InvalidInput('url must be an http(s) or webcal address')
        project_name = clean_title(project_name, 'project_name')
        async with self._db.transaction() as sess:
            res = await sess.exec(select(FeedSubscription.id).where(FeedSubscription.url == url))
            if res.first() is not None:
                raise Conflict('already subscribed to this feed')
            project = await self._projects.find_or_create(sess, project_name)
            sub = FeedSubscription(url=url, project_id=project.id)
            sess.add(sub)
            await sess.flush()
        logger.info('subscribed to %s as project %s (%r)', url, project.id, project_name)
        return sub

    async def cancel(self, subscription_id: int) -> None:
        """Drop the subscription together with its project and that project's todos."""
        async with self._db.transaction() as sess:
            sub = await sess.get(FeedSubscription, subscription_id)
            if sub is None:
                raise NotFound(f'subscription {subscription_id} not found')
            project_id = sub.project_id
            await sess.exec(sqlalchemy_delete(FeedSubscription).where(FeedSubscription.id == subscription_id))
            await sess.exec(sqlalchemy_delete(Todo).where(Todo.project_id == project_id))
            await sess.exec(sqlalchemy_delete(Project).where(Project.id == project_id))
            await self._positions.compact(sess, Scope.projects())
        logger.info('cancelled subscription %s (project %s removed)', subscription_id, project_id)

    async def fetch(self, url: str) -> bytes:
        async with httpx.AsyncClient(
            transport=self._transport, timeout=self._timeout, follow_redirects=True
        ) as client:
            try:
                resp = await client.get(_fetch_url(url))
            except httpx.HTTPError as exc:
                raise FeedFetchError(f'error fetching {url}: {exc!r}') from exc
        if not resp.is_success:
            raise FeedFetchError(f'error fetching {url}: status {resp.status_code}, body: {resp.text[:200]}')
        return resp.content

    async def sync_subscription(self, sub: FeedSubscription) -> int:
        """Import new events of one feed; returns the number of todos created.

        Fetch and parse failures raise before anything is written and leave
        ``last_synced_at`` untouched. Once the feed is parsed, a failing event
        is logged and skipped, and the subscription is stamped as synced.
        """
        body = await self.fetch(sub.url)
        start, end = feed_window(self._clock(), self._local_tz, self._window_years)
        events = parse_feed(body, start, end)

        imported = 0
        for ev in events:
            if not ev.uid:
                logger.warning('feed %s: skipping event %r without UID', sub.url, ev.summary)
                continue
            try:
                if await self._todos.exists_external(ev.uid):
                    continue
                await self._todos.create(
                    ev.summary or UNTITLED_EVENT,
                    sub.project_id,
                    due_date=event_due_date(ev.start, self._local_tz),
                    external_uid=ev.uid,
                    at_bottom=True,
                )
            except (SQLAlchemyError, InvalidInput, NotFound) as exc:
                logger.warning('feed %s: could not import event %s: %s', sub.url, ev.uid, exc)
                continue
            imported += 1

        async with self._db.transaction() as sess:
            await sess.exec(
                sqlalchemy_update(FeedSubscription)
                .where(FeedSubscription.id == sub.id)
                .values(last_synced_at=ensure_utc(self._clock()))
            )
        logger.info('feed %s: imported %d new event(s) into project %s', sub.url, imported, sub.project_id)
        return imported

    async def sync_by_id(self, subscription_id: int) -> int:
        return await self.sync_subscription(await self.get_subscription(subscription_id))

    async def sync_all(self) -> dict[int, int | str]:
        """One ingestion pass over every subscription.

        Returns imported counts per subscription id, or the error message for
        subscriptions that failed this round.
        """
        async with self._db.session() as sess:
            res = await sess.exec(select(FeedSubscription).order_by(FeedSubscription.id))
            subs = list(res.all())
        report: dict[int, int | str] = {}
        for sub in subs:
            try:
                report[sub.id] = await self.sync_subscription(sub)
            except (FeedFetchError, FeedParseError) as exc:
                logger.warning('feed %s: sync failed: %s', sub.url, exc)
                report[sub.id] = str(exc)
            except Exception as exc:
                logger.exception('feed %s: unexpected error during sync', sub.url)
                report[sub.id] = repr(exc)
        return report


class FeedRefresher:
    """Periodic feed sync with an explicit stop signal.

    ``run_once`` performs a single pass so tests never wait on the interval.
    """

    def __init__(self, feeds: FeedService, interval: float = config.FEED_REFRESH_INTERVAL_SECONDS):
        self.feeds = feeds
        self.interval = interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info('feed refresher started (interval=%ss)', self.interval)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            # the loop exits after the pass in progress, if any
            await self._task
            self._task = None
        await self.drain()
        logger.info('feed refresher stopped')

    async def run_once(self) -> dict[int, int | str]:
        try:
            return await self.feeds.sync_all()
        except Exception:
            logger.exception('feed refresh pass failed')
            return {}

    def trigger(self, subscription_id: int) -> asyncio.Task:
        """Sync one subscription in the background (used right after subscribing)."""
        task = asyncio.create_task(self._sync_one(subscription_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _sync_one(self, subscription_id: int) -> None:
        try:
            await self.feeds.sync_by_id(subscription_id)
        except (FeedFetchError, FeedParseError) as exc:
            logger.warning('initial sync of subscription %s failed: %s', subscription_id, exc)
        except Exception:
            logger.exception('initial sync of subscription %s failed', subscription_id)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_once()
