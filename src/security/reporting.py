"""Maps ingest outcomes to the client contract and RFC 7807 responses."""

from __future__ import annotations

from typing import Any, Final, Mapping, MutableMapping
from uuid import uuid4

from fastapi.responses import JSONResponse

from src.domain.models import (
    RejectionCategory,
    RejectionReason,
    UploadAccepted,
    UploadRejected,
)
from src.security.uploads import IngestOutcome

DEFAULT_TYPE = "about:blank"

REASON_CATEGORIES: Final[Mapping[RejectionReason, RejectionCategory]] = {
    RejectionReason.EXTENSION_NOT_ALLOWED: RejectionCategory.INVALID_EXTENSION,
    RejectionReason.DOUBLE_EXTENSION_DETECTED: RejectionCategory.DOUBLE_EXTENSION,
    RejectionReason.MIME_NOT_ALLOWED: RejectionCategory.INVALID_DECLARED_TYPE,
    RejectionReason.SIZE_EXCEEDED: RejectionCategory.SIZE_EXCEEDED,
    RejectionReason.SIGNATURE_MISMATCH: RejectionCategory.SIGNATURE_MISMATCH,
    RejectionReason.UNDETERMINABLE_SIGNATURE: RejectionCategory.UNDETERMINABLE_SIGNATURE,
}

CATEGORY_STATUS: Final[Mapping[RejectionCategory, int]] = {
    RejectionCategory.INVALID_EXTENSION: 400,
    RejectionCategory.DOUBLE_EXTENSION: 400,
    RejectionCategory.INVALID_DECLARED_TYPE: 400,
    RejectionCategory.SIZE_EXCEEDED: 413,
    RejectionCategory.SIGNATURE_MISMATCH: 415,
    RejectionCategory.UNDETERMINABLE_SIGNATURE: 415,
}

CATEGORY_MESSAGES: Final[Mapping[RejectionCategory, str]] = {
    RejectionCategory.INVALID_EXTENSION: "Invalid file type.",
    RejectionCategory.DOUBLE_EXTENSION: "Potential double extension attack detected. Upload rejected.",
    RejectionCategory.INVALID_DECLARED_TYPE: "Invalid MIME type reported by client.",
    RejectionCategory.SIZE_EXCEEDED: "File exceeds the maximum upload size.",
    RejectionCategory.SIGNATURE_MISMATCH: "File content does not match its extension.",
    RejectionCategory.UNDETERMINABLE_SIGNATURE: "File content looks suspicious or corrupted.",
}


def _ensure_headers(headers: Mapping[str, str] | None) -> MutableMapping[str, str]:
    """Return a mutable copy of headers or an empty dict."""
    return dict(headers or {})


def problem_response(
    *,
    status: int,
    title: str,
    detail: str,
    type_: str = DEFAULT_TYPE,
    instance: str | None = None,
    extras: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    correlation_id: str | None = None,
) -> JSONResponse:
    """
    Produce an RFC 7807 compliant JSON response.

    The correlation id is mirrored in the `X-Correlation-ID` header so that
    a rejected upload can be matched with the server-side audit entry.
    """
    cid = correlation_id or str(uuid4())
    payload: dict[str, Any] = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "correlation_id": cid,
    }
    if instance:
        payload["instance"] = instance
    if extras:
        payload.update(extras)

    response_headers = _ensure_headers(headers)
    response_headers.setdefault("X-Correlation-ID", cid)
    return JSONResponse(
        status_code=status,
        content=payload,
        headers=response_headers,
        media_type="application/problem+json",
    )


class ResultReporter:
    """Turns internal outcomes into generic client-facing results."""

    def category_for(self, reason: RejectionReason) -> RejectionCategory:
        return REASON_CATEGORIES[reason]

    def report(self, outcome: IngestOutcome) -> UploadAccepted | UploadRejected:
        if outcome.accepted and outcome.trusted is not None:
            return UploadAccepted(
                storage_name=outcome.trusted.assigned_name,
                detected_type=outcome.trusted.detected_type,
                size_bytes=outcome.trusted.size_bytes,
            )

        if outcome.reason is None:
            raise ValueError("Rejected outcome carries no reason")
        category = self.category_for(outcome.reason)
        # The detected type helps legitimate users with spoofing false positives.
        detected = outcome.detected_type if category is RejectionCategory.SIGNATURE_MISMATCH else None
        return UploadRejected(category=category, detected_type=detected)

    def status_code(self, result: UploadAccepted | UploadRejected) -> int:
        if isinstance(result, UploadAccepted):
            return 201
        return CATEGORY_STATUS[result.category]

    def message(self, category: RejectionCategory) -> str:
        return CATEGORY_MESSAGES[category]

    def to_response(
        self,
        outcome: IngestOutcome,
        *,
        instance: str | None = None,
        correlation_id: str | None = None,
    ) -> JSONResponse:
        """Render an outcome as a 201 body or a problem response."""
        result = self.report(outcome)
        status = self.status_code(result)
        if isinstance(result, UploadAccepted):
            headers = {"X-Correlation-ID": correlation_id} if correlation_id else None
            return JSONResponse(status_code=status, content=result.model_dump(), headers=headers)

        extras: dict[str, Any] = {
            "code": result.category.value,
            "category": result.category.value,
            "outcome": result.status,
        }
        if result.detected_type:
            extras["detected_type"] = result.detected_type
        return problem_response(
            status=status,
            title="Upload rejected",
            detail=self.message(result.category),
            instance=instance,
            extras=extras,
            correlation_id=correlation_id,
        )
