"""SQLAlchemy models owned by the storage worker."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored and returned as UTC.

    SQLite keeps no offset, so values are normalized on the way in and
    tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all storage models."""

    pass


class Project(Base):
    """Jira project metadata."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    project_type: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Project {self.key}: {self.name}>"


class Issue(Base):
    """
    Mirrored Jira issue.

    Normalized columns for browsing plus the raw payload. ``updated_at`` is
    the upstream timestamp and only ever moves forward.
    """

    __tablename__ = "issues"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(64))
    project_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(String(128), index=True)
    status_category: Mapped[str | None] = mapped_column(String(128))
    priority: Mapped[str | None] = mapped_column(String(64))
    issue_type: Mapped[str | None] = mapped_column(String(128))

    assignee_id: Mapped[str | None] = mapped_column(String(128))
    assignee_name: Mapped[str | None] = mapped_column(String(255))
    reporter_id: Mapped[str | None] = mapped_column(String(128))
    reporter_name: Mapped[str | None] = mapped_column(String(255))

    # JSON-encoded name lists
    labels: Mapped[str | None] = mapped_column(Text)
    components: Mapped[str | None] = mapped_column(Text)
    fix_versions: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    raw_data: Mapped[str] = mapped_column(Text, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = (Index("idx_issues_project_updated", project_key, updated_at),)

    def __repr__(self) -> str:
        return f"<Issue {self.key}: {self.summary}>"


class IssueChangeHistory(Base):
    """One field change from an issue's changelog (append-only)."""

    __tablename__ = "issue_change_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[str] = mapped_column(String(64), nullable=False)
    issue_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    history_id: Mapped[str] = mapped_column(String(64), nullable=False)
    author_account_id: Mapped[str | None] = mapped_column(String(128))
    author_display_name: Mapped[str | None] = mapped_column(String(255))
    field: Mapped[str] = mapped_column(String(255), nullable=False)
    field_type: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    from_value: Mapped[str | None] = mapped_column(Text)
    from_string: Mapped[str | None] = mapped_column(Text)
    to_value: Mapped[str | None] = mapped_column(Text)
    to_string: Mapped[str | None] = mapped_column(Text)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint("issue_id", "history_id", "field", name="uq_change_history_entry"),
    )

    def __repr__(self) -> str:
        return f"<IssueChangeHistory {self.issue_key} {self.field} @ {self.changed_at}>"


class SyncRun(Base):
    """Audit log of sync runs; never read back for control decisions."""

    __tablename__ = "sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # running, completed, failed
    issues_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.project_key}: {self.status}>"
