"""Pytest configuration and fixtures for ralph-dashboard tests.

Fixture Organization:
- reset_config_singleton: Auto-reset of the config singleton (autouse=True)
- db / stores: In-memory database with all stores bound to it
- make_story: Factory inserting a story with sensible defaults
- seeded_version: v0.1 with three stories in a dependency chain
"""

from collections.abc import Callable, Iterator
from typing import Any

import pytest

from ralph_dashboard.core.config import _reset_config
from ralph_dashboard.core.models import Story, Version
from ralph_dashboard.core.types import make_story_id
from ralph_dashboard.db import Database, Stores

VERSION = "v0.1"


@pytest.fixture(autouse=True)
def reset_config_singleton(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Reset config singleton before and after each test.

    Environment overrides are cleared so a developer's shell cannot leak
    into config loading.
    """
    monkeypatch.delenv("RALPH_DB_PATH", raising=False)
    monkeypatch.delenv("RALPH_CLAUDE_COMMAND", raising=False)
    _reset_config()
    yield
    _reset_config()


@pytest.fixture
def db() -> Iterator[Database]:
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def stores(db: Database) -> Stores:
    return Stores(db)


@pytest.fixture
def make_story(stores: Stores) -> Callable[..., Story]:
    """Factory for stored stories.

    Usage:
        story = make_story(1, 1, 2, depends_on=["1.1.1"], tags=["api"])
    """

    def _make(
        phase: int = 1,
        epic: int = 1,
        number: int = 1,
        version: str = VERSION,
        **fields: Any,
    ) -> Story:
        if stores.prd.get_version(version) is None:
            stores.prd.upsert_version(Version(version=version, title=f"Version {version}"))
        fields.setdefault("title", f"Story {phase}.{epic}.{number}")
        fields.setdefault("description", "Implement the thing")
        fields.setdefault("acceptance", ["Endpoint returns 200 with the record"])
        return stores.stories.create(
            Story(
                id=make_story_id(phase, epic, number, version),
                phase=phase,
                epic=epic,
                story_number=number,
                target_version=version,
                **fields,
            )
        )

    return _make


@pytest.fixture
def seeded_version(make_story: Callable[..., Story]) -> list[Story]:
    """Three stories: 1.1.1 <- 1.1.2 <- 1.1.3."""
    return [
        make_story(1, 1, 1, tags=["db"]),
        make_story(1, 1, 2, depends_on=["1.1.1"], tags=["api"]),
        make_story(1, 1, 3, depends_on=["1.1.2"], tags=["ui"]),
    ]
