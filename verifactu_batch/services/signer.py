"""
DocumentSigner -- turns a validated compliance document into a submission
envelope.

The signature is detached: exclusive C14N of the XML, signed with the
business's PKCS#12 key (RSA PKCS#1 v1.5 or ECDSA, SHA-256), carried on the
envelope with the signer's PEM certificate.  In the testing environment a
business without a certificate submits unsigned; in production the
certificate is mandatory.
"""

from __future__ import annotations

from verifactu_kernel.domain.submission import SubmissionEnvelope
from verifactu_kernel.domain.xml_codec import ComplianceDocument, canonical_xml
from verifactu_kernel.exceptions import CertificateMissingError
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.models.compliance_config import ComplianceEnvironment
from verifactu_kernel.services.certificate_monitor import CertificateMonitor

from verifactu_batch.domain.types import ClaimedRecord

logger = get_logger("batch.signer")


class DocumentSigner:
    def __init__(self, monitor: CertificateMonitor):
        self._monitor = monitor

    def envelope(self, claimed: ClaimedRecord, document: ComplianceDocument) -> SubmissionEnvelope:
        """Sign ``document`` for the claimed record.

        Opens its own short session to read the certificate reference; call
        it with no transaction open.

        Raises:
            CertificateMissingError: Production business without certificate.
            CertificateUnreadableError: Blob or passphrase unusable.
            CertificateTimeoutError: Reading the certificate timed out.
        """
        signature = None
        certificate_pem = None

        if claimed.has_certificate:
            loaded = self._monitor.load_signing_certificate(claimed.business_id)
            signature = loaded.sign(canonical_xml(document))
            certificate_pem = loaded.certificate_pem()
        elif claimed.environment == ComplianceEnvironment.PRODUCTION.value:
            raise CertificateMissingError(str(claimed.business_id))
        else:
            logger.info(
                "submission_unsigned",
                extra={"sequence_number": claimed.sequence_number},
            )

        return SubmissionEnvelope(
            record_id=claimed.record_id,
            business_id=claimed.business_id,
            sequence_number=claimed.sequence_number,
            invoice_number=claimed.invoice_number,
            document=document.content,
            signature=signature,
            certificate_pem=certificate_pem,
            environment=claimed.environment,
        )
