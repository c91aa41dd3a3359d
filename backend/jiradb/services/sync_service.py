"""Sync orchestrator: incremental, resumable Jira -> storage synchronization."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from jiradb.config import Settings
from jiradb.schemas.sync import (
    ProjectConfig,
    ProjectStatus,
    StartSyncResponse,
    SyncCheckpoint,
    SyncProgress,
    SyncResult,
    SyncStatus,
)
from jiradb.services.jira_client import JiraClient
from jiradb.services.project_store import ProjectNotFoundError, ProjectStore
from jiradb.storage.client import StorageClient
from jiradb.storage.protocol import ProxyError, ProxyTransportError

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Sync cancelled by user"
SHUTDOWN_GRACE_SECONDS = 30.0

ProgressListener = Callable[[SyncProgress], None]


class AlreadyRunningError(Exception):
    """Raised when a sync is requested while another one is running."""

    pass


class SyncCancelledError(Exception):
    """Raised inside a project sync when cancellation was requested."""

    pass


class NoEnabledProjectsError(Exception):
    """Raised when a sync of all projects finds nothing enabled."""

    pass


class SyncEventPublisher(Protocol):
    """Receives sync events; delivery is best-effort."""

    async def publish_progress(self, progress: SyncProgress) -> None: ...

    async def publish_complete(self, results: list[SyncResult]) -> None: ...

    async def publish_error(self, message: str) -> None: ...


class SyncOrchestrator:
    """
    Drives Jira -> storage syncs, one at a time.

    Per project:
    - Resume from a checkpoint if the last run was interrupted
    - Otherwise fetch only issues updated since the stored watermark
      (minus a safety margin) when incremental sync is enabled
    - Write a checkpoint after every applied batch
    - On completion clear the checkpoint and persist the store image

    Cancellation is cooperative and checked between batches.
    """

    def __init__(
        self,
        source: JiraClient,
        storage: StorageClient,
        projects: ProjectStore,
        settings: Settings,
        publisher: SyncEventPublisher | None = None,
    ):
        self.source = source
        self.storage = storage
        self.projects = projects
        self.settings = settings
        self.publisher = publisher

        self._is_syncing = False
        self._cancel_requested = False
        self._progress: SyncProgress | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def background_task(self) -> asyncio.Task | None:
        return self._task

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    def _acquire(self) -> None:
        # No await between the check and the set
        if self._is_syncing:
            raise AlreadyRunningError("Sync already in progress")
        self._is_syncing = True
        self._cancel_requested = False
        self._progress = None

    def _release(self) -> None:
        self._is_syncing = False
        self._cancel_requested = False
        self._progress = None

    def start_sync(self) -> StartSyncResponse:
        """Start syncing all enabled projects in the background."""
        self._acquire()
        self._task = asyncio.create_task(self._run_in_background(), name="jiradb-sync-all")
        return StartSyncResponse(started=True)

    def cancel_sync(self) -> bool:
        """Request cancellation; returns False when nothing is running."""
        if not self._is_syncing:
            return False
        logger.info("Sync cancellation requested")
        self._cancel_requested = True
        return True

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(is_syncing=self._is_syncing, progress=self._progress)

    async def sync_all(self, on_progress: ProgressListener | None = None) -> list[SyncResult]:
        """Sync every enabled project in registry order."""
        self._acquire()
        try:
            return await self._sync_enabled(on_progress)
        finally:
            self._release()

    async def sync_target(
        self, project_key: str, on_progress: ProgressListener | None = None
    ) -> SyncResult:
        """Sync a single project under the same one-at-a-time rule."""
        self._acquire()
        try:
            return await self.sync_project(project_key, on_progress)
        finally:
            self._release()

    async def shutdown(self) -> None:
        """Ask a background sync to stop and wait for it."""
        task = self._task
        if task is None or task.done():
            return
        self.cancel_sync()
        try:
            await asyncio.wait_for(asyncio.shield(task), SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("Background sync did not stop in time; cancelling")
            task.cancel()

    async def _run_in_background(self) -> None:
        try:
            results = await self._sync_enabled()
        except Exception as e:
            logger.error(f"Background sync failed: {e}", exc_info=True)
            await self._publish("error", str(e))
        else:
            await self._publish("complete", results)
        finally:
            self._release()

    async def _sync_enabled(self, on_progress: ProgressListener | None = None) -> list[SyncResult]:
        enabled = await self.projects.enabled_projects()
        if not enabled:
            raise NoEnabledProjectsError("No projects enabled for sync")

        results: list[SyncResult] = []
        for project in enabled:
            if self._cancel_requested:
                logger.info("Sync cancelled; skipping remaining projects")
                break
            results.append(await self.sync_project(project.key, on_progress))

        synced = sum(r.items_synced for r in results)
        logger.info(f"Sync finished: {len(results)} projects, {synced} issues")
        return results

    # -------------------------------------------------------------------------
    # Per-project algorithm
    # -------------------------------------------------------------------------

    async def _resolve_start(self, project_key: str) -> tuple[datetime | None, int]:
        """Return ``(updated_since, start_position)`` for the next run."""
        checkpoint = await self.projects.get_checkpoint(project_key)
        if checkpoint is not None:
            logger.info(
                f"Resuming {project_key} from position {checkpoint.start_position} "
                f"(last processed {checkpoint.last_processed_updated_at.isoformat()})"
            )
            return checkpoint.updated_since, checkpoint.start_position

        if self.settings.incremental_sync_enabled:
            watermark = await self.storage.get_latest_updated_at(project_key)
            if watermark is not None:
                margin = timedelta(minutes=self.settings.incremental_sync_margin_minutes)
                logger.info(f"Incremental sync of {project_key} since {watermark.isoformat()}")
                return watermark - margin, 0

        logger.info(f"Full sync of {project_key}")
        return None, 0

    async def sync_project(
        self, project_key: str, on_progress: ProgressListener | None = None
    ) -> SyncResult:
        """
        Sync one project and report the outcome.

        Errors never escape: they end up in the returned ``SyncResult``.
        The caller is expected to hold the sync slot (see ``sync_target``).
        """
        started_at = datetime.now(UTC)
        run_id: int | None = None
        items_synced = 0
        total_reported = 0
        last_checkpoint: SyncCheckpoint | None = None

        try:
            if await self.projects.get_project(project_key) is None:
                raise ProjectNotFoundError(f"Unknown project: {project_key}")

            updated_since, resumed_offset = await self._resolve_start(project_key)
            run_id = await self.storage.start_run(project_key)
            await self._report(
                SyncProgress(
                    project_key=project_key,
                    current=resumed_offset,
                    total=0,
                    message=f"Syncing {project_key}...",
                ),
                on_progress,
            )

            batches = self.source.iter_issue_batches(
                project_key, updated_since=updated_since, start_position=resumed_offset
            )
            async for batch in batches:
                # The last applied batch is already checkpointed
                if self._cancel_requested:
                    raise SyncCancelledError(CANCELLED_MESSAGE)

                for issue in batch:
                    await self.storage.upsert_issue(issue)

                items_synced += len(batch)
                total_reported = batches.total
                newest = max(issue.updated_at for issue in batch)
                if last_checkpoint is not None:
                    newest = max(newest, last_checkpoint.last_processed_updated_at)
                last_checkpoint = SyncCheckpoint(
                    last_processed_updated_at=newest,
                    start_position=resumed_offset + items_synced,
                    total_at_checkpoint=total_reported,
                    updated_since=updated_since,
                )
                await self.projects.put_checkpoint(project_key, last_checkpoint)
                await self.storage.update_run_progress(run_id, items_synced)

                position = resumed_offset + items_synced
                await self._report(
                    SyncProgress(
                        project_key=project_key,
                        current=position,
                        total=total_reported,
                        message=f"Synced {position}/{total_reported} issues",
                    ),
                    on_progress,
                )

            completed_at = datetime.now(UTC)
            await self.projects.clear_checkpoint(project_key, synced_at=completed_at)
            await self.storage.complete_run(run_id, success=True, issues_synced=items_synced)

            try:
                await self.storage.persist()
            except ProxyError as e:
                logger.warning(f"Failed to persist storage image after syncing {project_key}: {e}")

            logger.info(f"Synced {items_synced} issues for {project_key}")
            return SyncResult(
                project_key=project_key,
                status="completed",
                items_synced=items_synced,
                total_reported=total_reported,
                started_at=started_at,
                completed_at=completed_at,
            )

        except SyncCancelledError as e:
            logger.info(f"Sync of {project_key} cancelled after {items_synced} issues")
            await self._record_failure(run_id, items_synced, CANCELLED_MESSAGE)
            return SyncResult(
                project_key=project_key,
                status="cancelled",
                items_synced=items_synced,
                total_reported=total_reported,
                started_at=started_at,
                completed_at=datetime.now(UTC),
                error_message=str(e),
                error_type=type(e).__name__,
            )

        except Exception as e:
            logger.error(f"Sync of {project_key} failed: {e}", exc_info=True)
            await self._record_failure(run_id, items_synced, str(e))
            return SyncResult(
                project_key=project_key,
                status="failed",
                items_synced=items_synced,
                total_reported=total_reported,
                started_at=started_at,
                completed_at=datetime.now(UTC),
                error_message=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )

    async def _record_failure(self, run_id: int | None, items_synced: int, message: str) -> None:
        if run_id is None:
            return
        try:
            await self.storage.complete_run(
                run_id, success=False, issues_synced=items_synced, error_message=message
            )
        except ProxyError as e:
            logger.error(f"Failed to record sync run {run_id} outcome: {e}")

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def init_projects(self) -> list[ProjectConfig]:
        """
        Discover projects in Jira and register them (disabled).

        The registry write is what matters; mirroring the metadata into
        storage is best-effort and also happens on the next sync.
        """
        jira_projects = await self.source.get_projects()
        for project in jira_projects:
            await self.projects.upsert_project(project.key, project.name)

        try:
            for project in jira_projects:
                await self.storage.upsert_project(project)
        except ProxyError as e:
            logger.warning(f"Could not save projects to storage (will retry on sync): {e}")

        logger.info(f"Registered {len(jira_projects)} projects from Jira")
        return await self.projects.list_projects()

    async def get_projects_with_status(self) -> list[ProjectStatus]:
        """Registry entries with issue counts; counts are omitted if storage is unavailable."""
        statuses: list[ProjectStatus] = []
        storage_available = True

        for project in await self.projects.list_projects():
            issue_count: int | None = None
            if storage_available:
                try:
                    issue_count = await self.storage.get_issue_count(project.key)
                except ProxyTransportError as e:
                    logger.warning(f"Storage unavailable for issue counts: {e}")
                    storage_available = False
                except ProxyError as e:
                    logger.warning(f"Could not count issues for {project.key}: {e}")

            statuses.append(
                ProjectStatus(
                    **project.model_dump(),
                    issue_count=issue_count,
                    has_checkpoint=project.sync_checkpoint is not None,
                )
            )
        return statuses

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def _report(self, progress: SyncProgress, on_progress: ProgressListener | None) -> None:
        self._progress = progress
        if on_progress is not None:
            try:
                on_progress(progress)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")
        await self._publish("progress", progress)

    async def _publish(self, kind: str, payload) -> None:
        if self.publisher is None:
            return
        try:
            if kind == "progress":
                await self.publisher.publish_progress(payload)
            elif kind == "complete":
                await self.publisher.publish_complete(payload)
            else:
                await self.publisher.publish_error(payload)
        except Exception as e:
            logger.warning(f"Failed to publish sync {kind} event: {e}")
