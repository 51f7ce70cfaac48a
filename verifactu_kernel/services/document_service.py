"""
DocumentService -- builds the XML document of a registered invoice.

Responsibility:
    Rebuilds the snapshot stored on a chain record, encodes it with the
    business profile from ComplianceConfig and the record's chain position,
    and validates it before release (download or submission).

Failure modes:
    - ChainRecordNotFoundError / ComplianceNotConfiguredError.
    - ValidationError when the document fails validation; nothing is
      released.
"""

from uuid import UUID

from sqlalchemy import select

from verifactu_kernel.domain.snapshot import InvoiceSnapshot, PartySnapshot
from verifactu_kernel.domain.xml_codec import ChainLink, ComplianceDocument, encode, require_valid
from verifactu_kernel.exceptions import ChainRecordNotFoundError, ComplianceNotConfiguredError
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.models.chain_record import ChainRecord
from verifactu_kernel.models.compliance_config import ComplianceConfig
from verifactu_kernel.services.base import BaseService

logger = get_logger("services.document")


def build_document(record: ChainRecord, config: ComplianceConfig) -> ComplianceDocument:
    """Encode a chain record's stored snapshot (not yet validated)."""
    snapshot = InvoiceSnapshot.from_payload(record.snapshot_payload)
    business_profile = PartySnapshot(
        legal_id=config.legal_id,
        name=config.legal_name,
        address=snapshot.business.address,
        country_code=snapshot.business.country_code,
    )
    return encode(
        snapshot,
        business_profile,
        snapshot.counterparty,
        chain=ChainLink(
            sequence_number=record.sequence_number,
            current_hash=record.current_hash,
            previous_hash=record.previous_hash,
        ),
    )


class DocumentService(BaseService):
    """Read-only document export."""

    def export(self, business_id: UUID, invoice_id: str) -> ComplianceDocument:
        """
        Validated XML document for download.

        The returned document carries ``filename`` (``Factura-<number>.xml``)
        and ``content_type`` (``application/xml``).
        """
        record = self.session.execute(
            select(ChainRecord).where(
                ChainRecord.business_id == business_id,
                ChainRecord.invoice_id == str(invoice_id),
            )
        ).scalar_one_or_none()
        if record is None:
            raise ChainRecordNotFoundError(str(business_id), f"invoice {invoice_id}")

        config = self.session.execute(
            select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
        ).scalar_one_or_none()
        if config is None:
            raise ComplianceNotConfiguredError(str(business_id))

        document = require_valid(build_document(record, config))
        logger.info(
            "document_exported",
            extra={
                "business_id": str(business_id),
                "invoice_id": str(invoice_id),
                "document_filename": document.filename,
            },
        )
        return document
