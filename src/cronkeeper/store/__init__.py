"""Job-Store: Validierung, Cache und austauschbare Persistenz."""

from cronkeeper.store.factory import create_backend, create_store
from cronkeeper.store.jobs import JobStore

__all__ = ["JobStore", "create_backend", "create_store"]
