"""
Submission value objects shared by the kernel and the transmission worker.

``SubmissionEnvelope`` is what leaves the process (signed XML for one chain
record); ``SubmissionResponse`` is the per-record verdict a gateway hands
back.  ``classify_error_code`` maps authority error codes onto the retry
policy so gateways and the response parser agree on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class FailureKind(str, Enum):
    """How a non-accepted record should be treated."""

    TEMPORARY = "temporary"  # authority busy/unavailable: retry with backoff
    REJECTED_CONTENT = "rejected_content"
    DUPLICATE = "duplicate"
    SIGNATURE_INVALID = "signature_invalid"

    @property
    def retryable(self) -> bool:
        return self is FailureKind.TEMPORARY


# Authority error codes with a known meaning; anything else is a content
# rejection.
DUPLICATE_CODES = frozenset({"3000", "3001"})
SIGNATURE_CODES = frozenset({"4102", "4103", "4104"})
TEMPORARY_CODES = frozenset({"4500", "5000", "5001", "9999"})


def classify_error_code(code: str | None) -> FailureKind:
    """Failure kind for an authority error code."""
    if code in TEMPORARY_CODES:
        return FailureKind.TEMPORARY
    if code in DUPLICATE_CODES:
        return FailureKind.DUPLICATE
    if code in SIGNATURE_CODES:
        return FailureKind.SIGNATURE_INVALID
    return FailureKind.REJECTED_CONTENT


@dataclass(frozen=True)
class SubmissionEnvelope:
    """One signed record ready for the authority."""

    record_id: UUID
    business_id: UUID
    sequence_number: int
    invoice_number: str
    document: bytes
    signature: str | None = None  # base64, None when submitted unsigned
    certificate_pem: str | None = None
    environment: str = "testing"


@dataclass(frozen=True)
class SubmissionResponse:
    """Per-record outcome returned by a gateway."""

    invoice_number: str
    accepted: bool
    confirmation_code: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    failure_kind: FailureKind | None = None

    @classmethod
    def accept(cls, invoice_number: str, confirmation_code: str) -> SubmissionResponse:
        return cls(invoice_number=invoice_number, accepted=True, confirmation_code=confirmation_code)

    @classmethod
    def reject(
        cls,
        invoice_number: str,
        error_code: str,
        error_message: str,
        failure_kind: FailureKind | None = None,
    ) -> SubmissionResponse:
        return cls(
            invoice_number=invoice_number,
            accepted=False,
            error_code=error_code,
            error_message=error_message,
            failure_kind=failure_kind or classify_error_code(error_code),
        )

    @property
    def retryable(self) -> bool:
        return not self.accepted and self.failure_kind is not None and self.failure_kind.retryable
