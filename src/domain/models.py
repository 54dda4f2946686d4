"""
Domain models for the upload validation gate.
"""

import enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PipelineState(str, enum.Enum):
    """States an upload passes through while being ingested."""

    RECEIVED = "received"
    FILENAME_CHECKED = "filename_checked"
    MIME_CHECKED = "mime_checked"
    SIZE_CHECKED = "size_checked"
    STAGED = "staged"
    SIGNATURE_CHECKED = "signature_checked"
    TRUSTED = "trusted"
    PURGED = "purged"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.TRUSTED, PipelineState.PURGED)


class RejectionReason(str, enum.Enum):
    """Machine-readable rejection reasons used for logs and audit."""

    EXTENSION_NOT_ALLOWED = "extension-not-allowed"
    DOUBLE_EXTENSION_DETECTED = "double-extension-detected"
    MIME_NOT_ALLOWED = "mime-not-allowed"
    SIZE_EXCEEDED = "size-exceeded"
    UNDETERMINABLE_SIGNATURE = "undeterminable-signature"
    SIGNATURE_MISMATCH = "signature-mismatch"


class RejectionCategory(str, enum.Enum):
    """Coarse categories reported to clients."""

    INVALID_EXTENSION = "invalid-extension"
    DOUBLE_EXTENSION = "double-extension"
    INVALID_DECLARED_TYPE = "invalid-declared-type"
    SIZE_EXCEEDED = "size-exceeded"
    SIGNATURE_MISMATCH = "signature-mismatch"
    UNDETERMINABLE_SIGNATURE = "undeterminable-signature"


class UploadAccepted(BaseModel):
    """Response body for an upload that reached the trusted state."""

    model_config = ConfigDict(frozen=True)

    status: Literal["accepted"] = "accepted"
    storage_name: str
    detected_type: str
    size_bytes: int = Field(..., ge=0)


class UploadRejected(BaseModel):
    """Response body for an upload that was purged."""

    model_config = ConfigDict(frozen=True)

    status: Literal["rejected"] = "rejected"
    category: RejectionCategory
    detected_type: Optional[str] = None
