"""
SubmissionGateway -- contract of the authority endpoint.

The transport itself (SOAP, HTTP client, mutual TLS) lives outside this
package; the worker only knows this protocol.  ``submit_with_timeout``
bounds every call with an explicit timeout so a stuck endpoint cannot hold
the worker.

Gateway contract:
    - Returns one SubmissionResponse per envelope, matched by invoice
      number.  Rejections are returned, not raised.
    - Raises TransmissionError (or any subclass) for network-level
      failures; the whole call is then retryable.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol, Sequence, runtime_checkable

from verifactu_kernel.domain.submission import SubmissionEnvelope, SubmissionResponse
from verifactu_kernel.exceptions import SubmissionTimeoutError, TransmissionError
from verifactu_kernel.logging_config import get_logger

logger = get_logger("batch.gateway")


@runtime_checkable
class SubmissionGateway(Protocol):
    def submit(
        self, envelopes: Sequence[SubmissionEnvelope], timeout: float
    ) -> list[SubmissionResponse]: ...


def submit_with_timeout(
    gateway: SubmissionGateway,
    envelopes: Sequence[SubmissionEnvelope],
    timeout: float,
) -> list[SubmissionResponse]:
    """Call ``gateway.submit`` and give up after ``timeout`` seconds.

    Raises:
        SubmissionTimeoutError: No answer in time (retryable).
        TransmissionError: Raised by the gateway, or an unexpected
            exception from it, wrapped (retryable).
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="authority-submit")
    future = executor.submit(gateway.submit, list(envelopes), timeout)
    try:
        return list(future.result(timeout=timeout))
    except FutureTimeoutError:
        future.cancel()
        logger.warning(
            "submission_timeout",
            extra={"timeout_seconds": timeout, "envelopes": len(envelopes)},
        )
        raise SubmissionTimeoutError(timeout) from None
    except TransmissionError:
        raise
    except Exception as exc:
        logger.exception("gateway_unexpected_error")
        raise TransmissionError(f"Gateway failure: {exc}") from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


class LoopbackGateway:
    """Accepts every envelope with a synthetic confirmation code.

    For local runs against the testing environment when no authority
    transport is wired in.
    """

    def __init__(self, prefix: str = "LOOPBACK"):
        self._prefix = prefix
        self.submitted: list[SubmissionEnvelope] = []

    def submit(
        self, envelopes: Sequence[SubmissionEnvelope], timeout: float
    ) -> list[SubmissionResponse]:
        responses = []
        for envelope in envelopes:
            self.submitted.append(envelope)
            responses.append(
                SubmissionResponse.accept(
                    envelope.invoice_number,
                    f"{self._prefix}-{envelope.business_id.hex[:8].upper()}-{envelope.sequence_number}",
                )
            )
        return responses
