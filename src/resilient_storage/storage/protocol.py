from __future__ import annotations

from typing import Protocol, runtime_checkable

from resilient_storage.storage.types import (
    FileRef,
    HealthRecord,
    StorageResult,
    StoredFile,
)


@runtime_checkable
class StorageStrategy(Protocol):
    """Uniform capability surface implemented by every storage backend.

    Backends report expected failures through ``StorageResult.failure``;
    a ``TransientStorageError`` marks a failure as safe to retry.
    """

    async def upload(self, file: StoredFile) -> StorageResult[FileRef]:
        """Store ``file`` and return a reference to it."""

    async def download(self, path: str) -> StorageResult[bytes]:
        """Return the content stored at ``path``."""

    async def delete(self, path: str) -> StorageResult[None]:
        """Remove the file at ``path``."""

    async def exists(self, path: str) -> StorageResult[bool]:
        """Return whether a file is stored at ``path``."""

    async def list_files(
        self, prefix: str | None = None
    ) -> StorageResult[tuple[FileRef, ...]]:
        """List stored files, optionally restricted to ``prefix``."""

    async def copy_file(self, source: str, destination: str) -> StorageResult[None]:
        """Copy ``source`` to ``destination``."""

    async def move_file(self, source: str, destination: str) -> StorageResult[None]:
        """Move ``source`` to ``destination``."""

    async def create_directory(self, path: str) -> StorageResult[None]:
        """Create a directory or key prefix at ``path``."""

    async def get_health(self) -> StorageResult[HealthRecord]:
        """Probe the backend and report its health."""
