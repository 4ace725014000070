"""SQLite persistence for ralph-dashboard.

Usage:
    from ralph_dashboard.db import Database, Stores

    stores = Stores(Database(path))
    state = stores.run_state.get()
"""

from __future__ import annotations

from ralph_dashboard.db.checkpoints import CheckpointLog
from ralph_dashboard.db.database import Database, open_project_database
from ralph_dashboard.db.handoffs import TRANSITIONS, HandoffPipeline
from ralph_dashboard.db.metrics import MetricsStore
from ralph_dashboard.db.run_state import RunStateTracker
from ralph_dashboard.db.stories import StoryStore
from ralph_dashboard.db.tasks import TaskStore
from ralph_dashboard.db.versions import ALL_VERSIONS, PRDStore


class Stores:
    """All stores bound to one Database.

    Attributes:
        db: Shared database.
        stories: Story records.
        prd: Versions, phases, epics and PRD snapshots.
        run_state: Singleton execution state.
        checkpoints: Per-story stage markers.
        handoffs: Agent handoff pipeline.
        tasks: Async task records.
        metrics: Agent call log.

    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.stories = StoryStore(db)
        self.prd = PRDStore(db, self.stories)
        self.run_state = RunStateTracker(db)
        self.checkpoints = CheckpointLog(db)
        self.handoffs = HandoffPipeline(db)
        self.tasks = TaskStore(db)
        self.metrics = MetricsStore(db)


__all__ = [
    "ALL_VERSIONS",
    "TRANSITIONS",
    "CheckpointLog",
    "Database",
    "HandoffPipeline",
    "MetricsStore",
    "PRDStore",
    "RunStateTracker",
    "Stores",
    "StoryStore",
    "TaskStore",
    "open_project_database",
]
