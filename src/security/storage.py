"""Restricted storage area: random naming, staged writes, promotion and purge."""

from __future__ import annotations

import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Protocol

import anyio

from src.security.signatures import ContentClass

logger = logging.getLogger(__name__)

STAGING_DIR_NAME: Final = ".staging"
WRITE_CHUNK_BYTES: Final = 64 * 1024
FILE_MODE: Final = 0o600
DIR_MODE: Final = 0o700


class UploadStorageError(Exception):
    """Storage failure that breaks the guarantee that no untrusted file survives."""

    def __init__(self, code: str, message: str, status: int = 500):
        self.code = code
        self.message = message
        self.status = status
        super().__init__(message)


class SizeLimitExceeded(Exception):
    """Raised by the staging write once the streamed size passes the limit."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Upload exceeds {limit} bytes")


class ByteSource(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


@dataclass(frozen=True, slots=True)
class StagedFile:
    """Bytes written to storage that are not yet trusted."""

    storage_path: Path
    assigned_name: str
    size_bytes: int
    original_name_for_audit: str


@dataclass(frozen=True, slots=True)
class TrustedFile:
    """Verified upload, safe to hand to downstream consumers."""

    storage_path: Path
    assigned_name: str
    size_bytes: int
    original_name_for_audit: str
    detected_type: str


class StorageNamer:
    """Generates storage names that carry nothing from the client but the extension."""

    def __init__(self, token_bytes: int = 16):
        self.token_bytes = token_bytes

    def assign(self, allowed_extension: str, content_class: ContentClass) -> str:
        extension = allowed_extension.lower()
        if extension not in content_class.allowed_extensions:
            raise ValueError(f"Extension {extension!r} is not allowlisted for {content_class.name}")
        return f"{secrets.token_hex(self.token_bytes)}{extension}"


def _resolve_storage_dir(base_dir: str | os.PathLike[str]) -> Path:
    base_path = Path(base_dir).expanduser()
    # Reject storage rooted in symlinks to avoid swapping directories at runtime.
    if base_path.is_symlink():
        raise UploadStorageError("symlink_parent", "Upload directory must not be a symlink")
    try:
        base_path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Upload directory %s is unavailable: %s", base_path, exc)
        raise UploadStorageError("storage_unavailable", "Upload storage is unavailable") from exc
    return base_path.resolve()


class StagingArea:
    """
    Storage root with a private staging directory.

    Uploads are written to ``<root>/.staging`` and only moved into ``<root>``
    after signature verification, so nothing unverified is ever reachable
    under a trusted name.
    """

    def __init__(self, root: str | os.PathLike[str], namer: StorageNamer | None = None):
        self.root = Path(root)
        self.namer = namer or StorageNamer()

    @property
    def staging_dir(self) -> Path:
        return self.root / STAGING_DIR_NAME

    def prepare(self) -> tuple[Path, Path]:
        """Create the storage root and staging directory if missing."""
        root = _resolve_storage_dir(self.root)
        staging = _resolve_storage_dir(root / STAGING_DIR_NAME)
        return root, staging

    def _checked_path(self, directory: Path, name: str) -> Path:
        # ``directory`` is already resolved, so only the entry itself can be a link.
        candidate = directory / name
        if candidate.is_symlink():
            raise UploadStorageError("symlink_entry", "Upload path must not be a symlink")
        file_path = candidate.resolve()
        if file_path.parent != directory:
            raise UploadStorageError("path_traversal", "Invalid storage path detected")
        return file_path

    async def stage(
        self,
        source: ByteSource,
        *,
        extension: str,
        content_class: ContentClass,
        original_name: str,
    ) -> StagedFile:
        """Stream ``source`` into a freshly named staged file, enforcing the size limit."""
        _, staging = self.prepare()
        assigned_name = self.namer.assign(extension, content_class)
        file_path = self._checked_path(staging, assigned_name)
        limit = content_class.max_bytes

        written = 0
        try:
            async with await anyio.open_file(file_path, "xb") as fh:
                while True:
                    chunk = await source.read(WRITE_CHUNK_BYTES)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > limit:
                        raise SizeLimitExceeded(limit)
                    await fh.write(chunk)
            os.chmod(file_path, FILE_MODE)
        except SizeLimitExceeded:
            await self.delete(file_path)
            raise
        except FileExistsError as exc:
            # Never remove a file this call did not create.
            logger.error("Storage name collision on %s", assigned_name)
            raise UploadStorageError("name_collision", "Upload could not be stored") from exc
        except OSError as exc:
            logger.error("Failed to write staged upload %s: %s", assigned_name, exc)
            await self.delete(file_path)
            raise UploadStorageError("write_failed", "Upload could not be stored") from exc
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.delete(file_path)
            raise

        return StagedFile(
            storage_path=file_path,
            assigned_name=assigned_name,
            size_bytes=written,
            original_name_for_audit=original_name,
        )

    async def promote(self, staged: StagedFile, detected_type: str) -> TrustedFile:
        """Move a verified staged file into the storage root."""
        root, _ = self.prepare()
        target = self._checked_path(root, staged.assigned_name)
        try:
            await anyio.to_thread.run_sync(os.replace, staged.storage_path, target)
        except OSError as exc:
            logger.error("Failed to promote %s: %s", staged.assigned_name, exc)
            await self.purge(staged)
            raise UploadStorageError("promote_failed", "Upload could not be stored") from exc
        return TrustedFile(
            storage_path=target,
            assigned_name=staged.assigned_name,
            size_bytes=staged.size_bytes,
            original_name_for_audit=staged.original_name_for_audit,
            detected_type=detected_type,
        )

    async def delete(self, file_path: Path) -> None:
        """Remove ``file_path``; a failure is surfaced, never swallowed."""
        try:
            await anyio.Path(file_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.critical(
                "Rejected upload %s could not be deleted and may remain on storage: %s",
                file_path.name,
                exc,
            )
            raise UploadStorageError("delete_failed", "Upload could not be processed") from exc

    async def purge(self, staged: StagedFile) -> None:
        await self.delete(staged.storage_path)
        logger.info("Purged staged upload %s", staged.assigned_name)

    async def sweep_orphans(self, max_age_seconds: float, *, now: float | None = None) -> list[str]:
        """Delete staged files older than ``max_age_seconds``; return their names."""
        staging = anyio.Path(self.staging_dir)
        if not await staging.is_dir():
            return []

        cutoff = (time.time() if now is None else now) - max_age_seconds
        purged: list[str] = []
        async for entry in staging.iterdir():
            try:
                stat = await entry.stat()
            except FileNotFoundError:
                continue
            if stat.st_mtime >= cutoff:
                continue
            await self.delete(Path(entry))
            purged.append(entry.name)

        if purged:
            logger.warning("Swept %d orphaned staged upload(s)", len(purged))
        return purged
