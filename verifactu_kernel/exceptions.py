"""
Typed Exception Hierarchy for the VERI*FACTU Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A compliance subsystem must react to errors by category: a lost sequence
race is retried, a network timeout is retried later with backoff, a broken
hash chain halts everything for that business.  Callers therefore catch by
TYPE and read structured attributes, never parse messages:

    try:
        registry.get_or_create(business_id, invoice_id, direction)
    except ValidationError as e:
        return {"error": e.code, "fields": e.fields}

Every exception carries a ``code`` class attribute (machine-readable, stable,
written to ``ChainRecord.last_error_code`` and to structured logs).

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    VerifactuKernelError (base)
    |
    +-- ValidationError
    |
    +-- ChainError
    |   +-- ChainIntegrityError
    |   +-- ChainRecordNotFoundError
    |
    +-- ConcurrencyConflict
    |
    +-- ConfigurationError
    |   +-- ComplianceNotConfiguredError
    |   +-- ComplianceDisabledError
    |
    +-- SubmissionError
    |   +-- TransmissionError
    |   |   +-- SubmissionTimeoutError
    |   +-- RejectionError
    |
    +-- CertificateError
    |   +-- CertificateMissingError
    |   +-- CertificateExpiredError
    |   +-- CertificateUnreadableError
    |
    +-- ImmutabilityViolationError
    |
    +-- InvalidTransitionError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_FAILED           | Malformed snapshot or XML document
----------------|-----------------------------|-----------------------------------------
Chain           | CHAIN_INTEGRITY_BROKEN      | Replayed hash differs from stored hash
                | CHAIN_RECORD_NOT_FOUND      | No record for (business, invoice)
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONCURRENCY_CONFLICT        | Lost the race for the next sequence
----------------|-----------------------------|-----------------------------------------
Configuration   | COMPLIANCE_NOT_CONFIGURED   | Business has no ComplianceConfig
                | COMPLIANCE_DISABLED         | ComplianceConfig.enabled is false
----------------|-----------------------------|-----------------------------------------
Submission      | TRANSMISSION_FAILED         | Network failure (retryable)
                | SUBMISSION_TIMEOUT          | Gateway call timed out (retryable)
                | SUBMISSION_REJECTED         | Authority rejected content (terminal)
----------------|-----------------------------|-----------------------------------------
Certificate     | CERTIFICATE_MISSING         | No certificate installed
                | CERTIFICATE_EXPIRED         | Certificate validity window passed
                | CERTIFICATE_UNREADABLE      | Blob/passphrase cannot be parsed
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying chain fields or deleting
----------------|-----------------------------|-----------------------------------------
State machine   | INVALID_TRANSITION          | Event not allowed in current state

===============================================================================
RECOVERY POLICY
===============================================================================

Local recovery is limited to ConcurrencyConflict (refetch and retry the
creation) and TransmissionError (record returns to pending with backoff).
Everything else is surfaced: the record's ``error`` state with its code, the
worker run report, or the certificate health summary.
"""


class VerifactuKernelError(Exception):
    """
    Base exception for all kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "VERIFACTU_KERNEL_ERROR"


class ValidationError(VerifactuKernelError):
    """Input failed boundary validation. Non-retryable; nothing is persisted."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, errors: list[str] | tuple[str, ...], subject: str = "invoice"):
        self.errors = tuple(errors)
        self.fields = tuple(e.split(":", 1)[0] for e in self.errors)
        self.subject = subject
        super().__init__(f"Invalid {subject}: {'; '.join(self.errors)}")


# Chain-related exceptions


class ChainError(VerifactuKernelError):
    """Base exception for hash-chain errors."""

    code: str = "CHAIN_ERROR"


class ChainIntegrityError(ChainError):
    """
    Replaying the chain did not reproduce a stored hash, or the sequence
    cache disagrees with the stored records.

    Fatal: surfaced for manual audit, never auto-corrected.
    """

    code: str = "CHAIN_INTEGRITY_BROKEN"

    def __init__(
        self,
        business_id: str,
        sequence_number: int | None,
        expected_hash: str | None,
        actual_hash: str | None,
        reason: str = "hash_mismatch",
    ):
        self.business_id = business_id
        self.sequence_number = sequence_number
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        self.reason = reason
        super().__init__(
            f"Chain broken for business {business_id} at sequence "
            f"{sequence_number} ({reason}): expected {expected_hash}, "
            f"found {actual_hash}"
        )


class ChainRecordNotFoundError(ChainError):
    """No chain record exists for the requested key."""

    code: str = "CHAIN_RECORD_NOT_FOUND"

    def __init__(self, business_id: str, key: str):
        self.business_id = business_id
        self.key = key
        super().__init__(f"No chain record for business {business_id}: {key}")


class ConcurrencyConflict(VerifactuKernelError):
    """Another writer advanced the business's sequence first."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, business_id: str, expected_sequence: int):
        self.business_id = business_id
        self.expected_sequence = expected_sequence
        super().__init__(
            f"Sequence for business {business_id} moved past "
            f"{expected_sequence} during creation"
        )


# Configuration-related exceptions


class ConfigurationError(VerifactuKernelError):
    """Base exception for per-business configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class ComplianceNotConfiguredError(ConfigurationError):
    """Business has no compliance configuration."""

    code: str = "COMPLIANCE_NOT_CONFIGURED"

    def __init__(self, business_id: str):
        self.business_id = business_id
        super().__init__(f"Business {business_id} has no compliance configuration")


class ComplianceDisabledError(ConfigurationError):
    """Compliance reporting is disabled for the business."""

    code: str = "COMPLIANCE_DISABLED"

    def __init__(self, business_id: str):
        self.business_id = business_id
        super().__init__(f"Compliance reporting is disabled for business {business_id}")


# Submission-related exceptions


class SubmissionError(VerifactuKernelError):
    """Base exception for submission outcomes other than acceptance."""

    code: str = "SUBMISSION_ERROR"
    retryable: bool = False

    def __init__(self, message: str, authority_code: str | None = None):
        self.message = message
        self.authority_code = authority_code
        super().__init__(message)


class TransmissionError(SubmissionError):
    """Network-level failure. Retryable with backoff."""

    code: str = "TRANSMISSION_FAILED"
    retryable: bool = True


class SubmissionTimeoutError(TransmissionError):
    """The gateway did not answer within the configured timeout."""

    code: str = "SUBMISSION_TIMEOUT"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Submission timed out after {timeout_seconds}s")


class RejectionError(SubmissionError):
    """The authority rejected the record (content, duplicate, signature). Terminal."""

    code: str = "SUBMISSION_REJECTED"


# Certificate-related exceptions


class CertificateError(VerifactuKernelError):
    """Base exception for signing-certificate problems. Blocks submission only."""

    code: str = "CERTIFICATE_ERROR"

    def __init__(self, business_id: str, message: str):
        self.business_id = business_id
        super().__init__(message)


class CertificateMissingError(CertificateError):
    """No certificate has been installed for the business."""

    code: str = "CERTIFICATE_MISSING"

    def __init__(self, business_id: str):
        super().__init__(business_id, f"No signing certificate for business {business_id}")


class CertificateExpiredError(CertificateError):
    """The certificate's validity window has passed."""

    code: str = "CERTIFICATE_EXPIRED"

    def __init__(self, business_id: str, valid_until):
        self.valid_until = valid_until
        super().__init__(
            business_id,
            f"Signing certificate for business {business_id} expired at {valid_until}",
        )


class CertificateUnreadableError(CertificateError):
    """The certificate blob or its passphrase could not be parsed."""

    code: str = "CERTIFICATE_UNREADABLE"

    def __init__(self, business_id: str, reason: str):
        self.reason = reason
        super().__init__(
            business_id,
            f"Cannot read signing certificate for business {business_id}: {reason}",
        )


class CertificateTimeoutError(CertificateError):
    """Reading the certificate did not finish in time. Retryable; does not block."""

    code: str = "CERTIFICATE_TIMEOUT"
    retryable: bool = True

    def __init__(self, business_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            business_id,
            f"Reading the signing certificate for business {business_id} timed out after {timeout_seconds}s",
        )


class ImmutabilityViolationError(VerifactuKernelError):
    """Attempted to modify chain fields of a record or delete a record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class InvalidTransitionError(VerifactuKernelError):
    """Transmission state machine received an event it does not accept."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, state: str, event: str):
        self.state = state
        self.event = event
        super().__init__(f"Event {event} not allowed in state {state}")
