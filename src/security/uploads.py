"""Ingest pipeline that turns an untrusted upload into a trusted file or nothing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import anyio

from src.domain.models import PipelineState, RejectionReason
from src.security.policies import DeclaredMimePolicy, FilenamePolicy, final_extension
from src.security.signatures import ContentClass, SignatureVerifier
from src.security.storage import (
    ByteSource,
    SizeLimitExceeded,
    StagedFile,
    StagingArea,
    TrustedFile,
)

logger = logging.getLogger(__name__)


class _BytesSource:
    """In-memory byte source with the same read contract as ``UploadFile``."""

    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data) - self._offset
        chunk = self._data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk


@dataclass(slots=True)
class UploadRequest:
    """A single file field as received from the transport layer."""

    filename: str | None
    content_type: str | None
    source: ByteSource
    size: int | None = None

    @classmethod
    def from_bytes(cls, filename: str | None, content_type: str | None, data: bytes) -> "UploadRequest":
        return cls(filename=filename, content_type=content_type, source=_BytesSource(data), size=len(data))


@dataclass(frozen=True, slots=True)
class IngestOutcome:
    """Terminal result of one pipeline run."""

    state: PipelineState
    trail: tuple[PipelineState, ...]
    reason: RejectionReason | None = None
    detected_type: str | None = None
    trusted: TrustedFile | None = None
    original_name: str | None = None

    @property
    def accepted(self) -> bool:
        return self.state is PipelineState.TRUSTED


@dataclass(slots=True)
class _Run:
    request: UploadRequest
    content_class: ContentClass
    trail: list[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])

    def advance(self, state: PipelineState) -> None:
        self.trail.append(state)

    def purged(self, reason: RejectionReason, detected_type: str | None = None) -> IngestOutcome:
        self.trail.append(PipelineState.PURGED)
        logger.warning(
            "Upload rejected after %s: %s (class=%s, original=%r)",
            self.trail[-2].value,
            reason.value,
            self.content_class.name,
            self.request.filename,
        )
        return IngestOutcome(
            state=PipelineState.PURGED,
            trail=tuple(self.trail),
            reason=reason,
            detected_type=detected_type,
            original_name=self.request.filename,
        )

    def trusted(self, trusted: TrustedFile) -> IngestOutcome:
        self.trail.append(PipelineState.TRUSTED)
        logger.info(
            "Upload accepted as %s (%s, %d bytes, class=%s)",
            trusted.assigned_name,
            trusted.detected_type,
            trusted.size_bytes,
            self.content_class.name,
        )
        return IngestOutcome(
            state=PipelineState.TRUSTED,
            trail=tuple(self.trail),
            detected_type=trusted.detected_type,
            trusted=trusted,
            original_name=self.request.filename,
        )


class IngestPipeline:
    """
    Per-upload state machine.

    received -> filename_checked -> mime_checked -> size_checked -> staged
    -> signature_checked -> trusted | purged

    Policy rejections are returned as outcomes. Only ``UploadStorageError``
    propagates, because it means a rejected file may still be on storage.
    """

    def __init__(
        self,
        staging: StagingArea,
        *,
        filename_policy: FilenamePolicy | None = None,
        mime_policy: DeclaredMimePolicy | None = None,
        verifier: SignatureVerifier | None = None,
    ):
        self.staging = staging
        self.filename_policy = filename_policy or FilenamePolicy()
        self.mime_policy = mime_policy or DeclaredMimePolicy()
        self.verifier = verifier or SignatureVerifier()

    async def ingest(self, request: UploadRequest, content_class: ContentClass) -> IngestOutcome:
        run = _Run(request, content_class)

        decision = self.filename_policy.evaluate(request.filename, content_class)
        if not decision.accepted:
            return run.purged(decision.reason)
        run.advance(PipelineState.FILENAME_CHECKED)

        decision = self.mime_policy.evaluate(request.content_type, content_class)
        if not decision.accepted:
            return run.purged(decision.reason)
        run.advance(PipelineState.MIME_CHECKED)

        if request.size is not None and request.size > content_class.max_bytes:
            return run.purged(RejectionReason.SIZE_EXCEEDED)
        run.advance(PipelineState.SIZE_CHECKED)

        # The declared size is advisory; the write itself enforces the limit too.
        try:
            staged = await self.staging.stage(
                request.source,
                extension=final_extension(request.filename),
                content_class=content_class,
                original_name=request.filename or "",
            )
        except SizeLimitExceeded:
            return run.purged(RejectionReason.SIZE_EXCEEDED)
        run.advance(PipelineState.STAGED)

        return await self._verify_staged(run, staged)

    async def _verify_staged(self, run: _Run, staged: StagedFile) -> IngestOutcome:
        try:
            result = await self.verifier.verify(staged.storage_path, run.content_class)
        except BaseException:
            # Cancelled or failed mid-check: the staged file must not outlive the run.
            with anyio.CancelScope(shield=True):
                await self.staging.purge(staged)
            raise
        run.advance(PipelineState.SIGNATURE_CHECKED)

        if not result.verified:
            await self.staging.purge(staged)
            return run.purged(result.reason, result.detected_type)

        trusted = await self.staging.promote(staged, result.detected_type)
        return run.trusted(trusted)

    async def ingest_bytes(
        self,
        filename: str | None,
        content_type: str | None,
        data: bytes,
        content_class: ContentClass,
    ) -> IngestOutcome:
        """Convenience wrapper for payloads that are already in memory."""
        return await self.ingest(UploadRequest.from_bytes(filename, content_type, data), content_class)
