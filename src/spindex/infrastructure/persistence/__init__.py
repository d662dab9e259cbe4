"""Persistence layer - database, models and repositories."""

from spindex.infrastructure.persistence.database import Database, translate_db_errors
from spindex.infrastructure.persistence.repositories import (
    ArtistRepository,
    CronLockRepository,
    EventFilter,
    EventLogRepository,
    IngestRequestRepository,
    SnapshotRepository,
    TrackRepository,
)

__all__ = [
    "ArtistRepository",
    "CronLockRepository",
    "Database",
    "EventFilter",
    "EventLogRepository",
    "IngestRequestRepository",
    "SnapshotRepository",
    "TrackRepository",
    "translate_db_errors",
]
