"""
File Store - artifacts created by nodes during a run.

Layout:
  {root}/runs/{run_id}/{uuid}__{safe filename}
  {root}/runs/{run_id}/uploads/{uuid}__{safe filename}

The root defaults to ``$FILES_ROOT``, the configured ``runner.files_root``
or ``./.run-files``. Files are referenced by ``file://`` URIs in their FileRef.
"""

import asyncio
import hashlib
import logging
import re
import uuid
from pathlib import Path
from typing import Any

from graphrunner.config import get_files_root
from graphrunner.graph.run_state import FileKind, FileRef
from graphrunner.tools.catalog import ToolError

logger = logging.getLogger(__name__)

FILE_URI_PREFIX = "file://"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def safe_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


class FileStore:
    """Writes and reads run files on the local filesystem."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else get_files_root()

    def run_dir(self, run_id: str, uploads: bool = False) -> Path:
        path = self.root / "runs" / run_id
        return path / "uploads" if uploads else path

    def _write_sync(self, directory: Path, filename: str, data: bytes) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(data)
        return path

    async def write_bytes(
        self,
        run_id: str,
        node_id: str | None,
        data: bytes,
        filename: str = "file.bin",
        media_type: str = "application/octet-stream",
        uploads: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> FileRef:
        """Store ``data`` as a new file of the run and describe it."""
        file_id = str(uuid.uuid4())
        safe_name = safe_filename(filename)
        path = await asyncio.to_thread(
            self._write_sync, self.run_dir(run_id, uploads), f"{file_id}__{safe_name}", data
        )
        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return FileRef(
            id=file_id,
            run_id=run_id,
            node_id=node_id or None,
            kind=FileKind.UPLOAD if uploads else FileKind.GENERATED,
            uri=f"{FILE_URI_PREFIX}{path.resolve()}",
            filename=safe_name,
            media_type=media_type,
            bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            metadata=metadata,
        )

    async def write_text(
        self,
        run_id: str,
        node_id: str | None,
        content: str,
        filename: str = "file.txt",
        media_type: str = "text/plain; charset=utf-8",
        uploads: bool = False,
    ) -> FileRef:
        return await self.write_bytes(
            run_id, node_id, content.encode("utf-8"), filename, media_type, uploads
        )

    async def read_text(self, ref: FileRef) -> str:
        """
        Read a stored file as UTF-8 text.

        Raises:
            ToolError: If the file is not stored locally
        """
        if not ref.uri.startswith(FILE_URI_PREFIX):
            raise ToolError(f"Unsupported storage: {ref.uri}")
        path = Path(ref.uri[len(FILE_URI_PREFIX) :])
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
