"""Storage worker, its RPC proxy and the typed client used by the coordinator."""

from jiradb.storage.client import StorageClient
from jiradb.storage.proxy import StorageProxy, WorkerState

__all__ = ["StorageClient", "StorageProxy", "WorkerState"]
