"""Tests for progress views over a PRD snapshot."""

from ralph_dashboard.core.models import PRD, Epic, Phase, Story
from ralph_dashboard.prd.progress import (
    blocked_stories,
    epic_progress,
    phase_progress,
    total_stats,
    unmerged_passed,
)


def story(number: str, **fields) -> Story:
    phase, epic, n = (int(x) for x in number.split("."))
    return Story(
        id=f"v0.1:{number}",
        title=f"Story {number}",
        phase=phase,
        epic=epic,
        story_number=n,
        target_version="v0.1",
        **fields,
    )


def prd(*stories: Story) -> PRD:
    return PRD(
        version="v0.1",
        phases=[Phase(id=1, name="Foundation"), Phase(id=2, name="Features")],
        epics=[Epic(phase=1, id=1, name="Storage")],
        stories=list(stories),
    )


class TestCounts:
    def test_total_stats(self) -> None:
        snapshot = prd(
            story("1.1.1", merged=True, passes=True),
            story("1.1.2", passes=True),
            story("1.1.3", skipped=True),
            story("2.1.1"),
        )

        stats = total_stats(snapshot, {"total_duration_seconds": 12.5})

        assert stats.total == 4
        assert stats.merged == 1
        assert stats.passed == 1
        assert stats.skipped == 1
        assert stats.remaining == 2
        assert stats.percentage == 25
        assert stats.total_duration_seconds == 12.5

    def test_empty_prd(self) -> None:
        assert total_stats(prd()).percentage == 0

    def test_phase_progress(self) -> None:
        snapshot = prd(
            story("2.1.1"),
            story("1.1.1", merged=True),
            story("1.1.2"),
        )

        phases = phase_progress(snapshot)

        assert [(p.phase, p.name, p.total, p.merged, p.percentage) for p in phases] == [
            (1, "Foundation", 2, 1, 50),
            (2, "Features", 1, 0, 0),
        ]

    def test_epic_progress(self) -> None:
        snapshot = prd(story("1.1.2"), story("1.1.1", merged=True), story("1.2.1"))

        epics = epic_progress(snapshot)

        assert epics[0].epic_name == "Storage"
        assert epics[0].story_ids == ["v0.1:1.1.1", "v0.1:1.1.2"]
        assert epics[1].epic_name is None

    def test_unmerged_passed(self) -> None:
        snapshot = prd(story("1.1.1", passes=True), story("1.1.2", passes=True, merged=True))

        assert [s.id for s in unmerged_passed(snapshot)] == ["v0.1:1.1.1"]


class TestBlocked:
    def test_first_generation_only(self) -> None:
        # GIVEN: 1.1.2 waits on workable 1.1.1; 1.1.3 waits on blocked 1.1.2
        snapshot = prd(
            story("1.1.1"),
            story("1.1.2", depends_on=["1.1.1"]),
            story("1.1.3", depends_on=["1.1.2"]),
        )

        blocked = blocked_stories(snapshot)

        assert len(blocked) == 1
        assert blocked[0].story_id == "v0.1:1.1.2"
        assert blocked[0].blocked_by == "1.1.1"
        assert blocked[0].blocker_id == "v0.1:1.1.1"

    def test_limit(self) -> None:
        snapshot = prd(
            story("1.1.1"),
            *(story(f"1.2.{n}", depends_on=["1.1.1"]) for n in range(1, 8)),
        )

        assert len(blocked_stories(snapshot)) == 5
