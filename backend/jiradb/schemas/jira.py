"""Pydantic schemas for Jira REST API payloads."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)


def parse_jira_datetime(value: str | None) -> datetime | None:
    """
    Parse a Jira timestamp (e.g. ``2024-01-18T10:30:00.000+0000``).

    Naive values are assumed to be UTC. Returns None for empty or
    unparseable input.
    """
    if not value:
        return None
    for fmt in _DATETIME_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    return None


class JiraUser(BaseModel):
    """Jira user reference."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    account_id: str | None = Field(default=None, alias="accountId")
    display_name: str | None = Field(default=None, alias="displayName")


class JiraChangeItem(BaseModel):
    """A single field change inside a changelog entry."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    field: str
    field_type: str = Field(default="", alias="fieldtype")
    from_value: str | None = Field(default=None, alias="from")
    from_string: str | None = Field(default=None, alias="fromString")
    to_value: str | None = Field(default=None, alias="to")
    to_string: str | None = Field(default=None, alias="toString")


class JiraChangeHistory(BaseModel):
    """One changelog entry (a set of field changes made together)."""

    model_config = ConfigDict(extra="allow")

    id: str
    author: JiraUser | None = None
    created: str
    items: list[JiraChangeItem] = Field(default_factory=list)


class JiraChangelog(BaseModel):
    """Changelog expansion of an issue."""

    model_config = ConfigDict(extra="allow")

    histories: list[JiraChangeHistory] = Field(default_factory=list)


class JiraIssue(BaseModel):
    """
    Issue as returned by the search endpoint with ``expand=changelog``.

    ``fields`` is kept as the raw payload; typed accessors cover the
    attributes the sync engine depends on.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    key: str
    fields: dict[str, Any]
    changelog: JiraChangelog | None = None

    @property
    def updated_at(self) -> datetime:
        updated = parse_jira_datetime(self.fields.get("updated"))
        if updated is None:
            raise ValueError(f"Issue {self.key} has no valid 'updated' timestamp")
        return updated

    @property
    def project_key(self) -> str | None:
        project = self.fields.get("project") or {}
        return project.get("key")


class JiraProject(BaseModel):
    """Project as returned by ``/rest/api/3/project``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    key: str
    name: str
    project_type_key: str | None = Field(default=None, alias="projectTypeKey")


class IssuePage(BaseModel):
    """One page of search results."""

    issues: list[JiraIssue]
    total: int = 0
