"""Event log service - user interaction analytics."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from spindex.domain.dtos import EventMetrics, EventPage, Pagination, TopArtist
from spindex.domain.entities import EventRecord
from spindex.infrastructure.persistence import Database, EventFilter, EventLogRepository
from spindex.infrastructure.persistence.models import utc_now

logger = logging.getLogger(__name__)

# Double clicks and page re-renders fire the same event twice within a second or two.
DUPLICATE_WINDOW = timedelta(seconds=5)
TIMELINE_WINDOW = timedelta(days=30)
TOP_ARTISTS_LIMIT = 10


class EventService:
    """Append, list and aggregate events."""

    def __init__(self, database: Database, now: Callable[[], datetime] = utc_now) -> None:
        self._database = database
        self._now = now

    async def record_event(
        self,
        type: str,
        *,
        artist_id: str | None = None,
        artist_name: str | None = None,
        track_id: str | None = None,
        track_name: str | None = None,
        input: str | None = None,
        user_agent: str | None = None,
        ip: str | None = None,
    ) -> tuple[EventRecord, bool]:
        """Append an event unless an identical one was logged in the last 5 seconds.

        Identical means same type, artist_id, track_id, input, user_agent and ip.

        Returns:
            Tuple of (event, created flag); on a duplicate the passed-in event
            is returned with created=False
        """
        now = self._now()
        event = EventRecord(
            id=str(uuid.uuid4()),
            type=type,
            artist_id=artist_id,
            artist_name=artist_name,
            track_id=track_id,
            track_name=track_name,
            input=input,
            user_agent=user_agent,
            ip=ip,
            created_at=now,
        )
        async with self._database.session_scope() as session:
            repo = EventLogRepository(session)
            if await repo.exists_identical_since(event, now - DUPLICATE_WINDOW):
                logger.debug(f"Suppressed duplicate {type} event")
                return event, False
            await repo.add(event)
        return event, True

    async def list_events(
        self, filters: EventFilter | None = None, page: int = 1, page_size: int = 20
    ) -> EventPage:
        """List events newest first, paginated."""
        filters = filters or EventFilter()
        async with self._database.session_scope() as session:
            events, total = await EventLogRepository(session).list_events(
                filters, offset=(page - 1) * page_size, limit=page_size
            )
        return EventPage(events=events, pagination=Pagination.for_total(page, page_size, total))

    async def get_event_metrics(self, filters: EventFilter | None = None) -> EventMetrics:
        """Counts by type, a 30-day daily timeline, and the most active artists."""
        filters = filters or EventFilter()
        async with self._database.session_scope() as session:
            repo = EventLogRepository(session)
            by_type = await repo.count_by_type(filters)
            timeline = await repo.daily_counts(self._now() - TIMELINE_WINDOW, filters)
            top_rows = await repo.top_artists(filters, limit=TOP_ARTISTS_LIMIT)

        # Rows without a name are cron/ingest bookkeeping, not something to show.
        top_artists = [
            TopArtist(artist_id=artist_id, artist_name=name, count=count)
            for artist_id, name, count in top_rows
            if name
        ]
        return EventMetrics(by_type=by_type, timeline=timeline, top_artists=top_artists)
