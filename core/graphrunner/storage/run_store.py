"""
Run Store - persisted graph run records.

A record is written when a run starts and updated once when its event
stream ends, so a finished run can be served without the execution host.

File layout of :class:`FileRunStore`:
  {base_path}/runs/{record_id}.json
"""

import asyncio
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from graphrunner.graph.messages import Message
from graphrunner.graph.model import Graph
from graphrunner.graph.run_state import FileRef, NodeStatus, RunState

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class RunRecordStatus(StrEnum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class RunRecord(BaseModel):
    """A graph run as seen by a UI."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    graph_id: str
    owner_id: str | None = None
    workflow_id: str
    status: RunRecordStatus = RunRecordStatus.RUNNING
    graph: Graph
    prompt: Any = None
    from_node: str | None = None
    outputs: dict[str, Any] | None = None
    statuses: dict[str, NodeStatus] | None = None
    transcripts: list[tuple[str, list[Message]]] | None = None
    files: dict[str, FileRef] | None = None
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)

    def is_finished(self) -> bool:
        """Closed with its results persisted."""
        return (
            self.status in (RunRecordStatus.DONE, RunRecordStatus.ERROR)
            and self.statuses is not None
            and self.transcripts is not None
            and self.outputs is not None
        )

    def to_run_state(self) -> RunState:
        """The persisted results as a RunState to resume from."""
        return RunState(
            run_id=self.id,
            prompt=self.prompt,
            status=dict(self.statuses or {}),
            outputs=dict(self.outputs or {}),
            transcripts=list(self.transcripts or []),
            files=dict(self.files or {}),
        )


class RunStore(ABC):
    """Persistence of run records."""

    @abstractmethod
    async def create(self, record: RunRecord) -> RunRecord:
        """Store a new record."""

    @abstractmethod
    async def get(self, record_id: str) -> RunRecord | None:
        """Fetch a record by id."""

    @abstractmethod
    async def list_runs(self, graph_id: str | None = None) -> list[RunRecord]:
        """Records, oldest first, optionally of one graph."""

    @abstractmethod
    async def update(self, record_id: str, patch: dict[str, Any]) -> RunRecord | None:
        """Apply a partial update; returns the updated record or None if missing."""

    async def get_latest(self, graph_id: str) -> RunRecord | None:
        records = await self.list_runs(graph_id)
        return records[-1] if records else None


def _apply_patch(record: RunRecord, patch: dict[str, Any]) -> RunRecord:
    data = record.model_dump()
    data.update(patch)
    data["updated_at"] = _now()
    return RunRecord.model_validate(data)


class InMemoryRunStore(RunStore):
    """Keeps records in a dict (tests, single-process use)."""

    def __init__(self) -> None:
        self._records: dict[str, RunRecord] = {}

    async def create(self, record: RunRecord) -> RunRecord:
        self._records[record.id] = record
        return record

    async def get(self, record_id: str) -> RunRecord | None:
        return self._records.get(record_id)

    async def list_runs(self, graph_id: str | None = None) -> list[RunRecord]:
        records = [r for r in self._records.values() if graph_id is None or r.graph_id == graph_id]
        return sorted(records, key=lambda r: r.created_at)

    async def update(self, record_id: str, patch: dict[str, Any]) -> RunRecord | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        updated = _apply_patch(record, patch)
        self._records[record_id] = updated
        return updated


class FileRunStore(RunStore):
    """One JSON file per record; file IO runs in a worker thread."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.runs_dir = self.base_path / "runs"

    def get_record_path(self, record_id: str) -> Path:
        return self.runs_dir / f"{record_id}.json"

    def _write_sync(self, record: RunRecord) -> None:
        path = self.get_record_path(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{record.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read_sync(self, record_id: str) -> RunRecord | None:
        path = self.get_record_path(record_id)
        if not path.exists():
            return None
        return RunRecord.model_validate_json(path.read_text(encoding="utf-8"))

    async def create(self, record: RunRecord) -> RunRecord:
        await asyncio.to_thread(self._write_sync, record)
        logger.debug(f"Wrote run record {record.id}")
        return record

    async def get(self, record_id: str) -> RunRecord | None:
        return await asyncio.to_thread(self._read_sync, record_id)

    async def list_runs(self, graph_id: str | None = None) -> list[RunRecord]:
        def _scan() -> list[RunRecord]:
            if not self.runs_dir.exists():
                return []
            records = []
            for path in self.runs_dir.glob("*.json"):
                try:
                    record = RunRecord.model_validate_json(path.read_text(encoding="utf-8"))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable run record {path.name}: {e}")
                    continue
                if graph_id is None or record.graph_id == graph_id:
                    records.append(record)
            return sorted(records, key=lambda r: r.created_at)

        return await asyncio.to_thread(_scan)

    async def update(self, record_id: str, patch: dict[str, Any]) -> RunRecord | None:
        record = await self.get(record_id)
        if record is None:
            return None
        updated = _apply_patch(record, patch)
        await asyncio.to_thread(self._write_sync, updated)
        return updated
