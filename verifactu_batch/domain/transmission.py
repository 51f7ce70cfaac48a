"""
verifactu_batch.domain.transmission -- Transmission state machine.

Pure functions.  ZERO I/O.  The worker and the admin requeue path apply
every status change through ``transition()``; any pair not in the table
raises InvalidTransitionError and nothing is written.

    pending     + CLAIM                              -> processing  SUBMIT
    processing  + ACCEPTED                           -> sent        RECORD_CONFIRMATION
    processing  + RETRYABLE_FAILURE (attempts < max) -> pending     SCHEDULE_RETRY
    processing  + RETRYABLE_FAILURE (attempts >= max)-> error       RECORD_FAILURE
    processing  + REJECTED                           -> error       RECORD_FAILURE
    pending     + CERTIFICATE_BLOCKED                -> error       RECORD_FAILURE
    processing  + CERTIFICATE_BLOCKED                -> error       RECORD_FAILURE
    processing  + STALE                              -> pending     RECLAIM
    error       + REQUEUE                            -> pending     RESET_ATTEMPTS

``sent`` is terminal.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from verifactu_kernel.exceptions import InvalidTransitionError
from verifactu_kernel.models.chain_record import TransmissionStatus

from verifactu_batch.domain.types import Transition, TransitionEffect, TransmissionEvent

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SECONDS = 60
DEFAULT_BACKOFF_MAX_SECONDS = 3600

_PENDING = TransmissionStatus.PENDING.value
_PROCESSING = TransmissionStatus.PROCESSING.value
_SENT = TransmissionStatus.SENT.value
_ERROR = TransmissionStatus.ERROR.value

_TABLE: dict[tuple[str, TransmissionEvent], Transition] = {
    (_PENDING, TransmissionEvent.CLAIM): Transition(_PROCESSING, TransitionEffect.SUBMIT),
    (_PROCESSING, TransmissionEvent.ACCEPTED): Transition(_SENT, TransitionEffect.RECORD_CONFIRMATION),
    (_PROCESSING, TransmissionEvent.REJECTED): Transition(_ERROR, TransitionEffect.RECORD_FAILURE),
    (_PENDING, TransmissionEvent.CERTIFICATE_BLOCKED): Transition(_ERROR, TransitionEffect.RECORD_FAILURE),
    (_PROCESSING, TransmissionEvent.CERTIFICATE_BLOCKED): Transition(_ERROR, TransitionEffect.RECORD_FAILURE),
    (_PROCESSING, TransmissionEvent.STALE): Transition(_PENDING, TransitionEffect.RECLAIM),
    (_ERROR, TransmissionEvent.REQUEUE): Transition(_PENDING, TransitionEffect.RESET_ATTEMPTS),
}


def transition(
    state: str | TransmissionStatus,
    event: TransmissionEvent,
    *,
    attempts: int = 0,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Transition:
    """Next state and effect for ``event`` in ``state``.

    Args:
        state: Current transmission status.
        event: What happened.
        attempts: Attempt count *including* the one that just failed; only
            consulted for RETRYABLE_FAILURE.
        max_retries: Attempts allowed before a retryable failure is final.

    Raises:
        InvalidTransitionError: The pair is not in the table.
    """
    state_value = TransmissionStatus(state).value
    event = TransmissionEvent(event)

    if event is TransmissionEvent.RETRYABLE_FAILURE and state_value == _PROCESSING:
        if attempts >= max_retries:
            return Transition(_ERROR, TransitionEffect.RECORD_FAILURE)
        return Transition(_PENDING, TransitionEffect.SCHEDULE_RETRY)

    result = _TABLE.get((state_value, event))
    if result is None:
        raise InvalidTransitionError(state_value, event.value)
    return result


def backoff_delay(
    attempt: int,
    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
) -> float:
    """Seconds to wait after the ``attempt``-th failure: base * 2**(attempt-1), capped."""
    if attempt < 1:
        return 0.0
    return float(min(base_seconds * 2 ** (attempt - 1), max_seconds))


def next_attempt_at(
    now: datetime,
    attempt: int,
    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
    max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
) -> datetime:
    return now + timedelta(seconds=backoff_delay(attempt, base_seconds, max_seconds))


def is_stale(processing_started_at: datetime | None, now: datetime, timeout_seconds: float) -> bool:
    """A processing record with no start time is treated as stale."""
    if processing_started_at is None:
        return True
    return now - processing_started_at >= timedelta(seconds=timeout_seconds)
