"""Durable registry of sync targets and their resume checkpoints."""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from jiradb.schemas.sync import ProjectConfig, SyncCheckpoint
from jiradb.storage.files import write_atomic

logger = logging.getLogger(__name__)


class ProjectNotFoundError(LookupError):
    """Raised when a project key is not in the registry."""

    pass


class CheckpointStore(Protocol):
    """What the sync orchestrator needs from checkpoint persistence."""

    async def get_checkpoint(self, key: str) -> SyncCheckpoint | None: ...

    async def put_checkpoint(self, key: str, checkpoint: SyncCheckpoint) -> None: ...

    async def clear_checkpoint(self, key: str, synced_at: datetime | None = None) -> None: ...


class ProjectRegistry(BaseModel):
    """On-disk document layout."""

    projects: list[ProjectConfig] = Field(default_factory=list)


class ProjectStore:
    """
    Project registry and checkpoint store kept in one JSON document.

    Every mutation rewrites the document atomically (temp file + rename),
    so a crash leaves either the old or the new state on disk. Registry
    order is insertion order and is the order ``sync_all`` follows.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = asyncio.Lock()
        self._registry: ProjectRegistry | None = None

    async def _load(self) -> ProjectRegistry:
        if self._registry is None:
            if self.path.exists():
                raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
                self._registry = ProjectRegistry.model_validate_json(raw)
                logger.info(f"Loaded {len(self._registry.projects)} projects from {self.path}")
            else:
                self._registry = ProjectRegistry()
        return self._registry

    async def _save(self, registry: ProjectRegistry) -> None:
        content = registry.model_dump_json(indent=2)
        await asyncio.to_thread(write_atomic, self.path, content)

    def _find(self, registry: ProjectRegistry, key: str) -> ProjectConfig:
        for project in registry.projects:
            if project.key == key:
                return project
        raise ProjectNotFoundError(f"Unknown project: {key}")

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    async def list_projects(self) -> list[ProjectConfig]:
        async with self._lock:
            registry = await self._load()
            return [p.model_copy(deep=True) for p in registry.projects]

    async def get_project(self, key: str) -> ProjectConfig | None:
        async with self._lock:
            registry = await self._load()
            try:
                return self._find(registry, key).model_copy(deep=True)
            except ProjectNotFoundError:
                return None

    async def upsert_project(self, key: str, name: str) -> ProjectConfig:
        """Register a discovered project (disabled) or refresh its name."""
        async with self._lock:
            registry = await self._load()
            try:
                project = self._find(registry, key)
                project.name = name
            except ProjectNotFoundError:
                project = ProjectConfig(key=key, name=name, enabled=False)
                registry.projects.append(project)
            await self._save(registry)
            return project.model_copy(deep=True)

    async def set_enabled(self, key: str, enabled: bool) -> ProjectConfig:
        async with self._lock:
            registry = await self._load()
            project = self._find(registry, key)
            project.enabled = enabled
            await self._save(registry)
            return project.model_copy(deep=True)

    async def enabled_projects(self) -> list[ProjectConfig]:
        return [p for p in await self.list_projects() if p.enabled]

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def get_checkpoint(self, key: str) -> SyncCheckpoint | None:
        project = await self.get_project(key)
        if project is None or project.sync_checkpoint is None:
            return None
        return project.sync_checkpoint

    async def put_checkpoint(self, key: str, checkpoint: SyncCheckpoint) -> None:
        async with self._lock:
            registry = await self._load()
            self._find(registry, key).sync_checkpoint = checkpoint.model_copy()
            await self._save(registry)

    async def clear_checkpoint(self, key: str, synced_at: datetime | None = None) -> None:
        """Drop the checkpoint and record a completed sync."""
        async with self._lock:
            registry = await self._load()
            project = self._find(registry, key)
            project.sync_checkpoint = None
            project.last_synced_at = synced_at or datetime.now(UTC)
            await self._save(registry)
