"""Content classes and magic-number verification for staged uploads."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Final, Iterable, Mapping

import anyio
import filetype

from src.domain.models import RejectionReason

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX_BYTES: Final = 8192
DEFAULT_MAX_BYTES: Final = 2 * 1024 * 1024  # 2 MB hard limit


@dataclass(frozen=True, slots=True)
class SignatureRule:
    """Binary format known to the registry."""

    media_type: str
    extensions: tuple[str, ...]
    magic_prefixes: tuple[bytes, ...]

    def matches(self, data: bytes) -> bool:
        return any(data.startswith(prefix) for prefix in self.magic_prefixes)


PDF_RULE: Final = SignatureRule("application/pdf", (".pdf",), (b"%PDF-",))
JPEG_RULE: Final = SignatureRule("image/jpeg", (".jpg", ".jpeg"), (b"\xff\xd8\xff",))
PNG_RULE: Final = SignatureRule("image/png", (".png",), (b"\x89PNG\r\n\x1a\n",))

SIGNATURE_REGISTRY: Final[Mapping[str, SignatureRule]] = {
    rule.media_type: rule for rule in (PDF_RULE, JPEG_RULE, PNG_RULE)
}


@dataclass(frozen=True, slots=True)
class ContentClass:
    """Policy bundle governing one category of accepted upload."""

    name: str
    allowed_extensions: frozenset[str]
    allowed_declared_mime_types: frozenset[str]
    signature_matcher: Callable[[bytes], bool] = field(compare=False)
    max_bytes: int = DEFAULT_MAX_BYTES
    extension_media_types: Mapping[str, frozenset[str]] = field(
        default_factory=dict, compare=False
    )

    def media_types_for_extension(self, extension: str) -> frozenset[str]:
        """Return the binary types a file stored under ``extension`` may contain."""
        return self.extension_media_types.get(extension.lower(), frozenset())


def build_content_class(
    name: str,
    rules: Iterable[SignatureRule],
    *,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> ContentClass:
    """Assemble a content class from registry rules."""
    rules = tuple(rules)
    if not rules:
        raise ValueError("A content class needs at least one signature rule")

    extension_media_types: dict[str, set[str]] = {}
    for rule in rules:
        for extension in rule.extensions:
            extension_media_types.setdefault(extension, set()).add(rule.media_type)

    def signature_matcher(data: bytes) -> bool:
        return any(rule.matches(data) for rule in rules)

    return ContentClass(
        name=name,
        allowed_extensions=frozenset(extension_media_types),
        allowed_declared_mime_types=frozenset(rule.media_type for rule in rules),
        signature_matcher=signature_matcher,
        max_bytes=max_bytes,
        extension_media_types={
            ext: frozenset(types) for ext, types in extension_media_types.items()
        },
    )


def default_content_classes(max_bytes: int = DEFAULT_MAX_BYTES) -> dict[str, ContentClass]:
    """Content classes exposed by the upload API."""
    return {
        "any": build_content_class("any", (PDF_RULE, JPEG_RULE, PNG_RULE), max_bytes=max_bytes),
        "documents": build_content_class("documents", (PDF_RULE,), max_bytes=max_bytes),
        "images": build_content_class("images", (JPEG_RULE, PNG_RULE), max_bytes=max_bytes),
    }


def sniff_media_type(data: bytes) -> str | None:
    """Return the media type detected from magic bytes, or None when unknown."""
    kind = filetype.guess(data)
    if kind is None:
        return None
    return kind.mime


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of a signature check."""

    verified: bool
    detected_type: str | None = None
    reason: RejectionReason | None = None


class SignatureVerifier:
    """Authoritative content check run against bytes already on storage."""

    def __init__(self, prefix_bytes: int = SIGNATURE_PREFIX_BYTES):
        self.prefix_bytes = prefix_bytes

    async def read_prefix(self, storage_path: str | os.PathLike[str]) -> bytes:
        async with await anyio.open_file(storage_path, "rb") as fh:
            return await fh.read(self.prefix_bytes)

    def inspect(self, prefix: bytes, extension: str, content_class: ContentClass) -> VerificationResult:
        """Classify ``prefix`` for a file stored with ``extension``."""
        detected = sniff_media_type(prefix)
        if detected is None:
            return VerificationResult(False, None, RejectionReason.UNDETERMINABLE_SIGNATURE)

        if detected not in content_class.allowed_declared_mime_types:
            return VerificationResult(False, detected, RejectionReason.SIGNATURE_MISMATCH)

        # A PNG stored as .jpg is still a mismatch even though both are allowed.
        if detected not in content_class.media_types_for_extension(extension):
            return VerificationResult(False, detected, RejectionReason.SIGNATURE_MISMATCH)

        if not content_class.signature_matcher(prefix):
            return VerificationResult(False, detected, RejectionReason.SIGNATURE_MISMATCH)

        return VerificationResult(True, detected, None)

    async def verify(
        self, storage_path: str | os.PathLike[str], content_class: ContentClass
    ) -> VerificationResult:
        """Sniff the persisted bytes at ``storage_path`` against ``content_class``."""
        prefix = await self.read_prefix(storage_path)
        result = self.inspect(prefix, Path(storage_path).suffix, content_class)
        if not result.verified:
            logger.info(
                "Signature check failed for %s: %s (detected=%s)",
                Path(storage_path).name,
                result.reason.value if result.reason else None,
                result.detected_type,
            )
        return result
