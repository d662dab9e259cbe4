"""Worker system - background tasks and the periodic snapshot sweep."""

from spindex.application.workers.background_tasks import BackgroundTaskRunner, CooldownMap
from spindex.application.workers.snapshot_cron import (
    SnapshotCronService,
    SnapshotCronWorker,
    create_snapshot_cron_worker,
)

__all__ = [
    "BackgroundTaskRunner",
    "CooldownMap",
    "SnapshotCronService",
    "SnapshotCronWorker",
    "create_snapshot_cron_worker",
]
