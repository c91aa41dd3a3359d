"""Tests for the sync orchestrator."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from jiradb.schemas.sync import SyncProgress
from jiradb.services.sync_service import (
    AlreadyRunningError,
    NoEnabledProjectsError,
    SyncOrchestrator,
)
from jiradb.storage.client import StorageClient
from jiradb.storage.protocol import ProxyOperationError
from jiradb.storage.proxy import StorageProxy
from conftest import BASE_TIME, FakeChannel, make_history, make_issue


async def enable(project_store, key: str = "PROJ", name: str = "Project") -> None:
    await project_store.upsert_project(key, name)
    await project_store.set_enabled(key, True)


class TestSyncProject:
    """Tests for a single project sync."""

    @pytest.mark.asyncio
    async def test_full_sync_three_items(self, orchestrator, fake_jira, storage, project_store):
        times = [BASE_TIME, BASE_TIME + timedelta(minutes=5), BASE_TIME + timedelta(minutes=9)]
        fake_jira.issues["PROJ"] = [make_issue(i + 1, t) for i, t in enumerate(times)]
        await enable(project_store)

        result = await orchestrator.sync_target("PROJ")

        assert result.status == "completed"
        assert result.success is True
        assert result.items_synced == 3
        assert await storage.get_latest_updated_at("PROJ") == times[-1]
        assert await storage.get_issue_count("PROJ") == 3

        project = await project_store.get_project("PROJ")
        assert project.sync_checkpoint is None
        assert project.last_synced_at is not None

        runs = await storage.get_sync_history("PROJ")
        assert runs[0].status == "completed"
        assert runs[0].issues_synced == 3

    @pytest.mark.asyncio
    async def test_cancel_after_first_batch_then_resume(
        self, orchestrator, fake_jira, storage, project_store, sample_issues
    ):
        """Two batches of two; cancelling after the first leaves a resumable checkpoint."""
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        batches_seen: list[SyncProgress] = []

        def cancel_after_first_batch(progress: SyncProgress) -> None:
            if progress.current > 0:
                batches_seen.append(progress)
                orchestrator.cancel_sync()

        result = await orchestrator.sync_target("PROJ", on_progress=cancel_after_first_batch)

        assert result.status == "cancelled"
        assert result.items_synced == 2
        assert len(batches_seen) == 1

        checkpoint = await project_store.get_checkpoint("PROJ")
        assert checkpoint.start_position == 2
        assert checkpoint.last_processed_updated_at == BASE_TIME + timedelta(minutes=1)
        assert await storage.get_issue_count("PROJ") == 2

        runs = await storage.get_sync_history("PROJ")
        assert runs[0].status == "failed"
        assert runs[0].error_message == "Sync cancelled by user"

        calls_before = len(fake_jira.calls)
        resumed = await orchestrator.sync_target("PROJ")

        assert resumed.status == "completed"
        assert resumed.items_synced == 2
        assert fake_jira.calls[calls_before]["start_at"] == 2
        assert await storage.get_issue_count("PROJ") == 4
        assert await storage.get_latest_updated_at("PROJ") == BASE_TIME + timedelta(minutes=3)
        assert await project_store.get_checkpoint("PROJ") is None

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_does_not_mask_cancel(
        self, orchestrator, fake_jira, storage, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        original_put = project_store.put_checkpoint
        written = []

        async def put_once_then_fail(key, checkpoint):
            if written:
                raise OSError("disk full")
            written.append(checkpoint)
            await original_put(key, checkpoint)

        project_store.put_checkpoint = put_once_then_fail

        def cancel_after_first_batch(progress: SyncProgress) -> None:
            if progress.current > 0:
                orchestrator.cancel_sync()

        result = await orchestrator.sync_target("PROJ", on_progress=cancel_after_first_batch)

        assert result.status == "cancelled"
        assert result.error_message == "Sync cancelled by user"
        runs = await storage.get_sync_history("PROJ")
        assert runs[0].error_message == "Sync cancelled by user"
        checkpoint = await project_store.get_checkpoint("PROJ")
        assert checkpoint.start_position == 2

    @pytest.mark.asyncio
    async def test_resume_reuses_interrupted_query(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        def cancel_after_first_batch(progress: SyncProgress) -> None:
            if progress.current > 0:
                orchestrator.cancel_sync()

        await orchestrator.sync_target("PROJ", on_progress=cancel_after_first_batch)
        fake_jira.calls.clear()
        await orchestrator.sync_target("PROJ")

        assert fake_jira.calls[0]["start_at"] == 2
        assert fake_jira.calls[0]["updated_since"] is None

    @pytest.mark.asyncio
    async def test_incremental_sync_uses_watermark_minus_margin(
        self, orchestrator, fake_jira, project_store, sample_issues, test_settings
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        await orchestrator.sync_target("PROJ")
        fake_jira.calls.clear()

        result = await orchestrator.sync_target("PROJ")

        margin = timedelta(minutes=test_settings.incremental_sync_margin_minutes)
        assert fake_jira.calls[0]["updated_since"] == BASE_TIME + timedelta(minutes=3) - margin
        assert fake_jira.calls[0]["start_at"] == 0
        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_full_sync_when_incremental_disabled(
        self, fake_jira, storage, project_store, test_settings, sample_issues
    ):
        settings = test_settings.model_copy(update={"incremental_sync_enabled": False})
        orchestrator = SyncOrchestrator(fake_jira, storage, project_store, settings)
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        await orchestrator.sync_target("PROJ")
        await orchestrator.sync_target("PROJ")

        assert all(call["updated_since"] is None for call in fake_jira.calls)

    @pytest.mark.asyncio
    async def test_resync_creates_no_duplicates_and_never_regresses(
        self, fake_jira, storage, project_store, test_settings
    ):
        settings = test_settings.model_copy(update={"incremental_sync_enabled": False})
        orchestrator = SyncOrchestrator(fake_jira, storage, project_store, settings)
        history = [make_history("5001", BASE_TIME - timedelta(hours=1))]
        fake_jira.issues["PROJ"] = [
            make_issue(1, BASE_TIME + timedelta(hours=1), summary="Current", histories=history)
        ]
        await enable(project_store)
        await orchestrator.sync_target("PROJ")

        # Source now serves an older copy of the same issue
        fake_jira.issues["PROJ"] = [make_issue(1, BASE_TIME, summary="Stale", histories=history)]
        result = await orchestrator.sync_target("PROJ")

        assert result.status == "completed"
        issue = await storage.get_issue("PROJ-1")
        assert issue.summary == "Current"
        assert issue.updated_at == BASE_TIME + timedelta(hours=1)
        assert len(await storage.get_issue_history("PROJ-1")) == 1

    @pytest.mark.parametrize("page_size", [1, 2, 3, 10])
    @pytest.mark.asyncio
    async def test_latest_is_max_regardless_of_batching(
        self, page_size, fake_jira, storage, project_store, test_settings, sample_issues
    ):
        fake_jira.page_size = page_size
        fake_jira.issues["PROJ"] = sample_issues
        orchestrator = SyncOrchestrator(fake_jira, storage, project_store, test_settings)
        await enable(project_store)

        result = await orchestrator.sync_target("PROJ")

        assert result.items_synced == 4
        assert await storage.get_latest_updated_at("PROJ") == BASE_TIME + timedelta(minutes=3)

    @pytest.mark.asyncio
    async def test_source_failure_keeps_checkpoint(
        self, orchestrator, fake_jira, storage, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        fake_jira.fail_from = 2
        await enable(project_store)

        result = await orchestrator.sync_target("PROJ")

        assert result.status == "failed"
        assert result.error_type == "SourceFetchError"
        assert result.items_synced == 2
        checkpoint = await project_store.get_checkpoint("PROJ")
        assert checkpoint.start_position == 2
        runs = await storage.get_sync_history("PROJ")
        assert runs[0].status == "failed"
        assert "500" in runs[0].error_message

    @pytest.mark.asyncio
    async def test_handshake_failure_leaves_checkpoints_untouched(
        self, fake_jira, project_store, test_settings, sample_issues
    ):
        proxy = StorageProxy(
            lambda: FakeChannel(silent=True),
            handshake_attempts=2,
            handshake_interval=0.01,
            poll_interval=0.01,
        )
        orchestrator = SyncOrchestrator(
            fake_jira, StorageClient(proxy), project_store, test_settings
        )
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        before = test_settings.project_store_path.read_text()

        result = await orchestrator.sync_target("PROJ")

        assert result.status == "failed"
        assert result.error_type == "WorkerNotReadyError"
        assert test_settings.project_store_path.read_text() == before
        assert fake_jira.calls == []

    @pytest.mark.asyncio
    async def test_persist_failure_is_not_fatal(
        self, orchestrator, fake_jira, storage, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        storage.persist = AsyncMock(side_effect=ProxyOperationError("disk full"))

        result = await orchestrator.sync_target("PROJ")

        assert result.status == "completed"
        storage.persist.assert_awaited_once()
        assert await project_store.get_checkpoint("PROJ") is None

    @pytest.mark.asyncio
    async def test_persist_writes_image(
        self, orchestrator, fake_jira, project_store, sample_issues, test_settings
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        await orchestrator.sync_target("PROJ")

        assert test_settings.storage_snapshot_path.exists()

    @pytest.mark.asyncio
    async def test_unknown_project(self, orchestrator):
        result = await orchestrator.sync_target("NOPE")

        assert result.status == "failed"
        assert result.error_type == "ProjectNotFoundError"


class TestSyncAll:
    """Tests for multi-project syncs and the control surface."""

    @pytest.mark.asyncio
    async def test_no_enabled_projects(self, orchestrator, project_store):
        await project_store.upsert_project("PROJ", "Project")

        with pytest.raises(NoEnabledProjectsError, match="No projects enabled"):
            await orchestrator.sync_all()
        assert orchestrator.is_syncing is False

    @pytest.mark.asyncio
    async def test_failures_are_isolated_per_project(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["OPS"] = [make_issue(1, BASE_TIME, project="OPS")]
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store, "BROKEN", "Broken")
        await enable(project_store, "OPS", "Operations")
        await enable(project_store, "PROJ", "Project")
        await project_store.upsert_project("OFF", "Disabled")

        original = fake_jira.search_issue_page

        async def failing_for_broken(project_key, **kwargs):
            if project_key == "BROKEN":
                raise RuntimeError("unexpected payload")
            return await original(project_key, **kwargs)

        fake_jira.search_issue_page = failing_for_broken

        results = await orchestrator.sync_all()

        assert [(r.project_key, r.status) for r in results] == [
            ("BROKEN", "failed"),
            ("OPS", "completed"),
            ("PROJ", "completed"),
        ]

    @pytest.mark.asyncio
    async def test_concurrent_start_is_rejected(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        response = orchestrator.start_sync()
        assert response.started is True

        with pytest.raises(AlreadyRunningError):
            orchestrator.start_sync()
        with pytest.raises(AlreadyRunningError):
            await orchestrator.sync_target("PROJ")

        await orchestrator.background_task
        assert orchestrator.is_syncing is False
        assert orchestrator.get_sync_status().progress is None

    @pytest.mark.asyncio
    async def test_cancel_stops_between_projects(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = [make_issue(1, BASE_TIME)]
        fake_jira.issues["OPS"] = sample_issues
        await enable(project_store, "PROJ", "Project")
        await enable(project_store, "OPS", "Operations")

        def cancel_when_first_done(progress: SyncProgress) -> None:
            if progress.project_key == "PROJ" and progress.current == 1:
                orchestrator.cancel_sync()

        results = await orchestrator.sync_all(on_progress=cancel_when_first_done)

        # PROJ had a single batch, so it completed; OPS never started
        assert [(r.project_key, r.status) for r in results] == [("PROJ", "completed")]

    @pytest.mark.asyncio
    async def test_progress_cleared_after_run(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        seen: list[SyncProgress | None] = []

        def record_status(progress: SyncProgress) -> None:
            seen.append(orchestrator.get_sync_status().progress)

        await orchestrator.sync_target("PROJ", on_progress=record_status)

        assert [p.current for p in seen] == [0, 2, 4]
        status = orchestrator.get_sync_status()
        assert status.is_syncing is False
        assert status.progress is None

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, orchestrator):
        assert orchestrator.cancel_sync() is False
        assert orchestrator.get_sync_status().is_syncing is False

    @pytest.mark.asyncio
    async def test_events_are_published(
        self, fake_jira, storage, project_store, test_settings, sample_issues
    ):
        publisher = AsyncMock()
        orchestrator = SyncOrchestrator(
            fake_jira, storage, project_store, test_settings, publisher=publisher
        )
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        orchestrator.start_sync()
        await orchestrator.background_task

        currents = [c.args[0].current for c in publisher.publish_progress.await_args_list]
        assert currents == [0, 2, 4]
        results = publisher.publish_complete.await_args.args[0]
        assert results[0].items_synced == 4

    @pytest.mark.asyncio
    async def test_publisher_failure_does_not_fail_sync(
        self, fake_jira, storage, project_store, test_settings, sample_issues
    ):
        publisher = AsyncMock()
        publisher.publish_progress.side_effect = ConnectionError("socket closed")
        orchestrator = SyncOrchestrator(
            fake_jira, storage, project_store, test_settings, publisher=publisher
        )
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        result = await orchestrator.sync_target("PROJ")

        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_background_error_is_published(
        self, fake_jira, storage, project_store, test_settings
    ):
        publisher = AsyncMock()
        orchestrator = SyncOrchestrator(
            fake_jira, storage, project_store, test_settings, publisher=publisher
        )

        orchestrator.start_sync()
        await orchestrator.background_task

        publisher.publish_error.assert_awaited_once_with("No projects enabled for sync")
        assert orchestrator.is_syncing is False

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_background_sync(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)

        orchestrator.start_sync()
        await asyncio.sleep(0)
        await orchestrator.shutdown()

        assert orchestrator.background_task.done()
        assert orchestrator.is_syncing is False


class TestProjects:
    """Tests for project discovery and status."""

    @pytest.mark.asyncio
    async def test_init_projects_registers_disabled(self, orchestrator, fake_jira, storage):
        fake_jira.projects = [
            {"id": "100", "key": "PROJ", "name": "Project"},
            {"id": "101", "key": "OPS", "name": "Operations"},
        ]

        projects = await orchestrator.init_projects()

        assert [(p.key, p.enabled) for p in projects] == [("PROJ", False), ("OPS", False)]
        assert {p.key for p in await storage.get_projects()} == {"PROJ", "OPS"}

    @pytest.mark.asyncio
    async def test_init_projects_keeps_enabled_flag(self, orchestrator, fake_jira, project_store):
        await enable(project_store, "PROJ", "Old name")
        fake_jira.projects = [{"id": "100", "key": "PROJ", "name": "New name"}]

        projects = await orchestrator.init_projects()

        assert projects[0].enabled is True
        assert projects[0].name == "New name"

    @pytest.mark.asyncio
    async def test_init_projects_tolerates_storage_failure(
        self, fake_jira, project_store, test_settings
    ):
        proxy = StorageProxy(
            lambda: FakeChannel(silent=True), handshake_attempts=1, handshake_interval=0.01
        )
        orchestrator = SyncOrchestrator(
            fake_jira, StorageClient(proxy), project_store, test_settings
        )
        fake_jira.projects = [{"id": "100", "key": "PROJ", "name": "Project"}]

        projects = await orchestrator.init_projects()

        assert [p.key for p in projects] == ["PROJ"]

    @pytest.mark.asyncio
    async def test_projects_with_status(
        self, orchestrator, fake_jira, project_store, sample_issues
    ):
        fake_jira.issues["PROJ"] = sample_issues
        await enable(project_store)
        await project_store.upsert_project("OPS", "Operations")
        await orchestrator.sync_target("PROJ")

        statuses = {s.key: s for s in await orchestrator.get_projects_with_status()}

        assert statuses["PROJ"].issue_count == 4
        assert statuses["PROJ"].has_checkpoint is False
        assert statuses["OPS"].issue_count == 0
