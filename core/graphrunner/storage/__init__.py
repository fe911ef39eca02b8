"""Persistence of run records."""

from graphrunner.storage.run_store import (
    FileRunStore,
    InMemoryRunStore,
    RunRecord,
    RunRecordStatus,
    RunStore,
)

__all__ = ["FileRunStore", "InMemoryRunStore", "RunRecord", "RunRecordStatus", "RunStore"]
