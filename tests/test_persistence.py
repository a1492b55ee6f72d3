"""
Tests for SQLite project persistence.
"""

import pytest

from comic_studio.context.persistence import SQLitePersistenceStore, SaveStatus
from comic_studio.core.exceptions import PersistenceError
from comic_studio.project.models import ComicPanel, ComicProject, WorkflowStage


def make_project(owner="alice", title="Untitled"):
    return ComicProject.new(theme="tides", title=title, owner_id=owner)


class TestActiveSlots:
    """Tests for the per-owner active slot limit."""

    @pytest.mark.asyncio
    async def test_fourth_project_refused(self, persistence):
        for i in range(3):
            result = await persistence.save_active(make_project(title=f"p{i}"))
            assert result.ok

        result = await persistence.save_active(make_project(title="p3"))

        assert result.status == SaveStatus.SLOTS_FULL
        assert len(await persistence.load_active_projects("alice")) == 3

    @pytest.mark.asyncio
    async def test_resaving_existing_project_allowed_when_full(self, persistence):
        projects = [make_project(title=f"p{i}") for i in range(3)]
        for project in projects:
            await persistence.save_active(project)

        projects[0].title = "renamed"
        result = await persistence.save_active(projects[0])

        assert result.ok
        titles = {p.title for p in await persistence.load_active_projects("alice")}
        assert "renamed" in titles

    @pytest.mark.asyncio
    async def test_slots_are_per_owner(self, persistence):
        for i in range(3):
            await persistence.save_active(make_project(owner="alice", title=f"p{i}"))

        result = await persistence.save_active(make_project(owner="bob"))
        assert result.ok

    @pytest.mark.asyncio
    async def test_deleting_frees_a_slot(self, persistence):
        projects = [make_project(title=f"p{i}") for i in range(3)]
        for project in projects:
            await persistence.save_active(project)

        await persistence.delete_active(projects[0].id)

        assert (await persistence.save_active(make_project())).ok

    @pytest.mark.asyncio
    async def test_other_owner_cannot_overwrite(self, persistence):
        project = make_project(owner="alice")
        await persistence.save_active(project)
        project.owner_id = "mallory"

        with pytest.raises(PersistenceError):
            await persistence.save_active(project)


class TestQuota:
    """Tests for the document size quota."""

    @pytest.mark.asyncio
    async def test_oversized_project_refused(self, tmp_path):
        store = SQLitePersistenceStore(tmp_path / "small.db", max_project_bytes=2048)
        project = make_project()
        project.panels = [
            ComicPanel(id=f"p{i}", description="x" * 200, image_url="data:image/png;base64," + "A" * 500)
            for i in range(10)
        ]

        result = await store.save_active(project)

        assert result.status == SaveStatus.QUOTA_EXCEEDED
        assert not result.ok
        assert await store.load_active_projects("alice") == []


class TestRoundTrip:
    """Tests for loading stored documents."""

    @pytest.mark.asyncio
    async def test_loaded_project_matches_saved(self, persistence):
        project = make_project(title="Storm Keeper")
        project.workflow_stage = WorkflowStage.POST_PRODUCTION
        project.panels = [ComicPanel(id="p1", description="lamp", dialogue="Not tonight.")]
        await persistence.save_active(project)

        (loaded,) = await persistence.load_active_projects("alice")

        assert loaded.to_dict() == project.to_dict()

    @pytest.mark.asyncio
    async def test_library_separate_from_active(self, persistence):
        project = make_project()
        await persistence.save_to_library(project)

        assert await persistence.load_active_projects("alice") == []
        assert [p.id for p in await persistence.load_library("alice")] == [project.id]

        await persistence.delete_library(project.id)
        assert await persistence.load_library("alice") == []

    @pytest.mark.asyncio
    async def test_most_recent_first(self, persistence):
        older = make_project(title="older")
        older.last_modified = 1000
        newer = make_project(title="newer")
        newer.last_modified = 2000
        await persistence.save_active(older)
        await persistence.save_active(newer)

        titles = [p.title for p in await persistence.load_active_projects("alice")]
        assert titles == ["newer", "older"]
