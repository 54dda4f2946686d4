"""Cheap pre-write checks on client-supplied upload metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Final

from src.domain.models import RejectionReason
from src.security.signatures import ContentClass

# Executable or server-side interpretable extensions, matched anywhere in the name.
DANGEROUS_EXTENSIONS_RE: Final = re.compile(
    r"\.(php\d?|phtml|exe|sh|bash|pl|py|js|jsp|asp|aspx|bat|cmd|vbs|wsf)(\.|$)",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Accept, or reject with a reason."""

    accepted: bool
    reason: RejectionReason | None = None

    @classmethod
    def accept(cls) -> "PolicyDecision":
        return cls(True, None)

    @classmethod
    def reject(cls, reason: RejectionReason) -> "PolicyDecision":
        return cls(False, reason)


def final_extension(filename: str | None) -> str:
    """Return the lowercased last extension of ``filename`` including the dot."""
    if not filename:
        return ""
    # Browsers on Windows may send the full client path.
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return PurePosixPath(basename).suffix.lower()


def has_embedded_dangerous_extension(filename: str) -> bool:
    """True when a dangerous extension hides before another extension."""
    return any(
        match.group(2) == "." for match in DANGEROUS_EXTENSIONS_RE.finditer(filename.lower())
    )


class FilenamePolicy:
    """Extension allowlist plus double-extension detection."""

    def evaluate(self, original_name: str | None, content_class: ContentClass) -> PolicyDecision:
        name = original_name or ""
        if has_embedded_dangerous_extension(name):
            return PolicyDecision.reject(RejectionReason.DOUBLE_EXTENSION_DETECTED)
        if final_extension(name) not in content_class.allowed_extensions:
            return PolicyDecision.reject(RejectionReason.EXTENSION_NOT_ALLOWED)
        return PolicyDecision.accept()


def normalize_mime(value: str | None) -> str:
    if not value:
        return ""
    return value.split(";", 1)[0].strip().lower()


class DeclaredMimePolicy:
    """Early rejection based on the advisory Content-Type header."""

    def evaluate(self, declared_mime_type: str | None, content_class: ContentClass) -> PolicyDecision:
        if normalize_mime(declared_mime_type) not in content_class.allowed_declared_mime_types:
            return PolicyDecision.reject(RejectionReason.MIME_NOT_ALLOWED)
        return PolicyDecision.accept()
