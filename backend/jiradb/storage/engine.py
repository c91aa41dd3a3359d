"""Storage engine backed by SQLAlchemy async (SQLite or PostgreSQL)."""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from jiradb.schemas.jira import JiraIssue, JiraProject, parse_jira_datetime
from jiradb.schemas.storage import (
    ChangeHistoryOut,
    DatabaseImage,
    IssueOut,
    ProjectOut,
    SearchParams,
    SearchResult,
    SyncRunOut,
)
from jiradb.storage.files import write_atomic
from jiradb.storage.models import Base, Issue, IssueChangeHistory, Project, SyncRun

logger = logging.getLogger(__name__)


class StorageEngineError(Exception):
    """Raised when the storage engine cannot carry out an operation."""

    pass


def _insert_for(dialect_name: str) -> Callable[..., Any]:
    """Pick the dialect-specific INSERT construct that supports ON CONFLICT."""
    if dialect_name == "sqlite":
        return sqlite.insert
    if dialect_name == "postgresql":
        return postgresql.insert
    raise StorageEngineError(f"Unsupported database dialect: {dialect_name}")


def _adf_to_text(node: Any) -> str:
    """Flatten an Atlassian Document Format node into plain text."""
    if not isinstance(node, dict):
        return ""
    if node.get("type") == "text" and isinstance(node.get("text"), str):
        return node["text"]
    content = node.get("content")
    if isinstance(content, list):
        return "".join(_adf_to_text(child) for child in content)
    return ""


def _description_to_text(description: Any) -> str | None:
    if not description:
        return None
    if isinstance(description, str):
        return description
    if isinstance(description, dict):
        return _adf_to_text(description)
    return json.dumps(description)


def _names(values: Any) -> str | None:
    """JSON-encode the ``name`` of each element of a Jira list field."""
    if not values:
        return None
    return json.dumps([v.get("name") for v in values if isinstance(v, dict)])


class StorageEngine:
    """
    Single-writer store for mirrored issues.

    Only the storage worker instantiates this class. Upserts are idempotent
    and never move an issue's ``updated_at`` backwards, so replaying an
    older batch (e.g. on resume or with an incremental safety margin) is
    harmless.
    """

    def __init__(self, database_url: str, snapshot_path: Path | None = None):
        self.database_url = database_url
        self.snapshot_path = snapshot_path
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._session_maker is not None

    @property
    def dialect_name(self) -> str:
        if self._engine is None:
            raise StorageEngineError("Database not initialized")
        return self._engine.dialect.name

    def _session(self) -> AsyncSession:
        if self._session_maker is None:
            raise StorageEngineError("Database not initialized")
        return self._session_maker()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Create tables and restore the last persisted image if the store is empty."""
        async with self._init_lock:
            if self.initialized:
                return

            url = make_url(self.database_url)
            engine_kwargs: dict[str, Any] = {}
            if url.get_backend_name() == "sqlite":
                if url.database and url.database != ":memory:":
                    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                else:
                    engine_kwargs["poolclass"] = StaticPool

            engine = create_async_engine(self.database_url, **engine_kwargs)
            try:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            except Exception:
                await engine.dispose()
                raise

            self._engine = engine
            self._session_maker = async_sessionmaker(engine, expire_on_commit=False)
            logger.info(f"Storage engine initialized ({engine.dialect.name})")

            await self._restore_image()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_maker = None

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def upsert_project(self, payload: dict[str, Any]) -> None:
        project = JiraProject.model_validate(payload)
        insert = _insert_for(self.dialect_name)
        values = {
            "id": project.id,
            "key": project.key,
            "name": project.name,
            "project_type": project.project_type_key,
        }
        stmt = insert(Project).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Project.id],
            set_={
                "key": stmt.excluded.key,
                "name": stmt.excluded.name,
                "project_type": stmt.excluded.project_type,
                "updated_at": func.now(),
            },
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_projects(self) -> list[ProjectOut]:
        async with self._session() as session:
            rows = await session.scalars(select(Project).order_by(Project.key))
            return [ProjectOut.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Issues
    # -------------------------------------------------------------------------

    async def upsert_issue(self, payload: dict[str, Any]) -> None:
        """
        Insert or update one issue and record its changelog.

        The row is overwritten only when the incoming ``updated`` is not
        older than the stored one. Change history is keyed by
        (issue_id, history_id, field) and never duplicated.
        """
        issue = JiraIssue.model_validate(payload)
        fields = issue.fields
        project = fields.get("project") or {}
        status = fields.get("status") or {}
        assignee = fields.get("assignee") or {}
        reporter = fields.get("reporter") or {}

        values = {
            "id": issue.id,
            "key": issue.key,
            "project_id": project.get("id"),
            "project_key": project.get("key") or issue.key.split("-")[0],
            "summary": fields.get("summary") or "",
            "description": _description_to_text(fields.get("description")),
            "status": status.get("name"),
            "status_category": (status.get("statusCategory") or {}).get("name"),
            "priority": (fields.get("priority") or {}).get("name"),
            "issue_type": (fields.get("issuetype") or {}).get("name"),
            "assignee_id": assignee.get("accountId"),
            "assignee_name": assignee.get("displayName"),
            "reporter_id": reporter.get("accountId"),
            "reporter_name": reporter.get("displayName"),
            "labels": json.dumps(fields["labels"]) if fields.get("labels") else None,
            "components": _names(fields.get("components")),
            "fix_versions": _names(fields.get("fixVersions")),
            "created_at": parse_jira_datetime(fields.get("created")),
            "updated_at": issue.updated_at,
            "raw_data": json.dumps(payload),
            "is_deleted": False,
            "synced_at": datetime.now(UTC),
        }

        insert = _insert_for(self.dialect_name)
        stmt = insert(Issue).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Issue.id],
            set_={k: stmt.excluded[k] for k in values if k != "id"},
            where=Issue.updated_at <= stmt.excluded.updated_at,
        )

        async with self._session() as session:
            await session.execute(stmt)

            histories = issue.changelog.histories if issue.changelog else []
            for history in histories:
                changed_at = parse_jira_datetime(history.created)
                if changed_at is None:
                    logger.warning(f"Skipping changelog {history.id} of {issue.key}: bad timestamp")
                    continue
                for item in history.items:
                    entry = insert(IssueChangeHistory).values(
                        issue_id=issue.id,
                        issue_key=issue.key,
                        history_id=history.id,
                        author_account_id=history.author.account_id if history.author else None,
                        author_display_name=history.author.display_name if history.author else None,
                        field=item.field,
                        field_type=item.field_type,
                        from_value=item.from_value,
                        from_string=item.from_string,
                        to_value=item.to_value,
                        to_string=item.to_string,
                        changed_at=changed_at,
                    )
                    await session.execute(
                        entry.on_conflict_do_nothing(
                            index_elements=["issue_id", "history_id", "field"]
                        )
                    )

            await session.commit()

    async def get_issue(self, key: str) -> IssueOut | None:
        async with self._session() as session:
            row = await session.scalar(
                select(Issue).where(Issue.key == key, Issue.is_deleted.is_(False))
            )
            return IssueOut.model_validate(row) if row else None

    async def search_issues(self, params: SearchParams) -> SearchResult:
        conditions = [Issue.is_deleted.is_(False)]
        if params.query:
            pattern = f"%{params.query}%"
            conditions.append(
                or_(
                    Issue.summary.ilike(pattern),
                    Issue.description.ilike(pattern),
                    Issue.key.ilike(pattern),
                )
            )
        if params.project:
            conditions.append(Issue.project_key == params.project)
        if params.status:
            conditions.append(Issue.status == params.status)
        if params.assignee:
            conditions.append(Issue.assignee_name.ilike(f"%{params.assignee}%"))

        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(Issue).where(*conditions)
            )
            rows = await session.scalars(
                select(Issue)
                .where(*conditions)
                .order_by(Issue.updated_at.desc(), Issue.key)
                .limit(params.limit)
                .offset(params.offset)
            )
            return SearchResult(
                issues=[IssueOut.model_validate(row) for row in rows],
                total=total or 0,
            )

    async def get_issue_history(
        self, issue_key: str, field: str | None = None
    ) -> list[ChangeHistoryOut]:
        query = select(IssueChangeHistory).where(IssueChangeHistory.issue_key == issue_key)
        if field:
            query = query.where(IssueChangeHistory.field == field)
        query = query.order_by(IssueChangeHistory.changed_at.desc(), IssueChangeHistory.id.desc())

        async with self._session() as session:
            rows = await session.scalars(query)
            return [ChangeHistoryOut.model_validate(row) for row in rows]

    async def get_latest_updated_at(self, project_key: str) -> datetime | None:
        """Watermark: the newest upstream ``updated`` stored for a project."""
        async with self._session() as session:
            return await session.scalar(
                select(func.max(Issue.updated_at)).where(
                    Issue.project_key == project_key, Issue.is_deleted.is_(False)
                )
            )

    async def get_issue_count(self, project_key: str) -> int:
        async with self._session() as session:
            count = await session.scalar(
                select(func.count()).select_from(Issue).where(
                    Issue.project_key == project_key, Issue.is_deleted.is_(False)
                )
            )
            return count or 0

    async def get_project_statuses(self, project_key: str) -> list[str]:
        async with self._session() as session:
            rows = await session.scalars(
                select(Issue.status)
                .where(
                    Issue.project_key == project_key,
                    Issue.is_deleted.is_(False),
                    Issue.status.is_not(None),
                )
                .distinct()
                .order_by(Issue.status)
            )
            return list(rows)

    # -------------------------------------------------------------------------
    # Sync history
    # -------------------------------------------------------------------------

    async def start_run(self, project_key: str) -> int:
        run = SyncRun(
            project_key=project_key,
            started_at=datetime.now(UTC),
            status="running",
            issues_synced=0,
        )
        async with self._session() as session:
            session.add(run)
            await session.commit()
            return run.id

    async def update_run_progress(self, run_id: int, issues_synced: int) -> None:
        async with self._session() as session:
            await session.execute(
                update(SyncRun).where(SyncRun.id == run_id).values(issues_synced=issues_synced)
            )
            await session.commit()

    async def complete_run(
        self,
        run_id: int,
        success: bool,
        issues_synced: int,
        error_message: str | None = None,
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id)
                .values(
                    completed_at=datetime.now(UTC),
                    status="completed" if success else "failed",
                    issues_synced=issues_synced,
                    error_message=error_message,
                )
            )
            await session.commit()

    async def get_sync_history(
        self, project_key: str | None = None, limit: int = 20
    ) -> list[SyncRunOut]:
        query = select(SyncRun).order_by(SyncRun.id.desc()).limit(limit)
        if project_key:
            query = query.where(SyncRun.project_key == project_key)
        async with self._session() as session:
            rows = await session.scalars(query)
            return [SyncRunOut.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Durable image
    # -------------------------------------------------------------------------

    async def export_image(self) -> DatabaseImage:
        async with self._session() as session:
            projects = await session.scalars(select(Project))
            issues = await session.scalars(select(Issue))
            history = await session.scalars(select(IssueChangeHistory))
            runs = await session.scalars(select(SyncRun))
            return DatabaseImage(
                exported_at=datetime.now(UTC),
                projects=[ProjectOut.model_validate(row) for row in projects],
                issues=[IssueOut.model_validate(row) for row in issues],
                change_history=[ChangeHistoryOut.model_validate(row) for row in history],
                sync_history=[SyncRunOut.model_validate(row) for row in runs],
            )

    async def persist(self) -> None:
        """Write the whole store as a JSON image to ``snapshot_path``."""
        if self.snapshot_path is None:
            logger.info("No snapshot path configured; skipping persist")
            return

        image = await self.export_image()
        await asyncio.to_thread(write_atomic, self.snapshot_path, image.model_dump_json())
        logger.info(
            f"Persisted image: {len(image.issues)} issues, "
            f"{len(image.change_history)} history entries"
        )

    async def _restore_image(self) -> None:
        if self.snapshot_path is None or not self.snapshot_path.exists():
            return

        async with self._session() as session:
            existing = await session.scalar(select(func.count()).select_from(Issue))
        if existing:
            return

        raw = await asyncio.to_thread(self.snapshot_path.read_text, encoding="utf-8")
        image = DatabaseImage.model_validate_json(raw)
        insert = _insert_for(self.dialect_name)

        async with self._session() as session:
            tables = (
                (Project, image.projects),
                (Issue, image.issues),
                (IssueChangeHistory, image.change_history),
                (SyncRun, image.sync_history),
            )
            for model, rows in tables:
                for row in rows:
                    await session.execute(
                        insert(model)
                        .values(**row.model_dump(exclude_none=True))
                        .on_conflict_do_nothing()
                    )
            await session.commit()

        logger.info(
            f"Restored image from {self.snapshot_path}: "
            f"{len(image.issues)} issues, {len(image.change_history)} history entries"
        )
