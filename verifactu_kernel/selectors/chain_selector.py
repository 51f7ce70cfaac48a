"""
Module: verifactu_kernel.selectors.chain_selector
Responsibility: Read-only queries over chain records and compliance
    configuration: record lookups, status counts and the per-business
    transmission statistics shown on the administrative surface.
Architecture position: Kernel > Selectors.  Never mutates.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, select

from verifactu_kernel.domain.dtos import BusinessTransmissionStats, ChainRecordView
from verifactu_kernel.models.chain_record import ChainRecord, TransmissionStatus
from verifactu_kernel.models.compliance_config import ComplianceConfig
from verifactu_kernel.selectors.base import BaseSelector


def record_view(record: ChainRecord) -> ChainRecordView:
    """Freeze an ORM row into a ChainRecordView."""
    return ChainRecordView(
        id=record.id,
        business_id=record.business_id,
        invoice_id=record.invoice_id,
        invoice_number=record.invoice_number,
        direction=record.invoice_direction,
        sequence_number=record.sequence_number,
        previous_hash=record.previous_hash,
        current_hash=record.current_hash,
        qr_payload=record.qr_payload,
        qr_image_ref=record.qr_image_ref,
        transmission_status=str(TransmissionStatus(record.transmission_status).value),
        transmission_timestamp=record.transmission_timestamp,
        authority_confirmation_code=record.authority_confirmation_code,
        is_legally_verifiable=record.is_legally_verifiable,
        attempt_count=record.attempt_count,
        next_attempt_at=record.next_attempt_at,
        last_error_code=record.last_error_code,
        last_error_message=record.last_error_message,
    )


class ChainSelector(BaseSelector):
    """Queries over ChainRecord / ComplianceConfig."""

    def find(self, business_id: UUID, invoice_id: str) -> ChainRecordView | None:
        record = self.session.execute(
            select(ChainRecord).where(
                ChainRecord.business_id == business_id,
                ChainRecord.invoice_id == str(invoice_id),
            )
        ).scalar_one_or_none()
        return record_view(record) if record is not None else None

    def get_by_id(self, record_id: UUID) -> ChainRecordView | None:
        record = self.session.get(ChainRecord, record_id)
        return record_view(record) if record is not None else None

    def list_records(
        self,
        business_id: UUID,
        status: TransmissionStatus | None = None,
        limit: int | None = None,
    ) -> list[ChainRecordView]:
        """Records of a business in ascending sequence order."""
        stmt = select(ChainRecord).where(ChainRecord.business_id == business_id)
        if status is not None:
            stmt = stmt.where(ChainRecord.transmission_status == TransmissionStatus(status).value)
        stmt = stmt.order_by(ChainRecord.sequence_number)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [record_view(r) for r in self.session.execute(stmt).scalars()]

    def status_counts(self, business_id: UUID) -> dict[str, int]:
        rows = self.session.execute(
            select(ChainRecord.transmission_status, func.count())
            .where(ChainRecord.business_id == business_id)
            .group_by(ChainRecord.transmission_status)
        ).all()
        counts = {status.value: 0 for status in TransmissionStatus}
        for status, count in rows:
            counts[str(status)] = count
        return counts

    def business_ids(self, enabled_only: bool = False) -> list[UUID]:
        stmt = select(ComplianceConfig.business_id).order_by(ComplianceConfig.business_id)
        if enabled_only:
            stmt = stmt.where(ComplianceConfig.enabled.is_(True))
        return list(self.session.execute(stmt).scalars())

    def transmission_stats(self, business_id: UUID) -> BusinessTransmissionStats:
        """
        Counts per status plus timing.

        ``next_submission_eligible_at`` is the later of the flow-control
        deadline and the earliest pending record's backoff deadline; None
        when nothing is pending.
        """
        counts = self.status_counts(business_id)
        config = self.session.execute(
            select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
        ).scalar_one_or_none()

        next_eligible = None
        if counts[TransmissionStatus.PENDING.value]:
            head = self.session.execute(
                select(ChainRecord)
                .where(
                    ChainRecord.business_id == business_id,
                    ChainRecord.transmission_status == TransmissionStatus.PENDING.value,
                )
                .order_by(ChainRecord.sequence_number)
                .limit(1)
            ).scalar_one()
            candidates = [head.next_attempt_at]
            if config is not None and config.last_submission_attempt_at is not None:
                candidates.append(
                    config.last_submission_attempt_at
                    + timedelta(seconds=config.flow_control_interval_seconds)
                )
            known = [c for c in candidates if c is not None]
            next_eligible = max(known) if known else None

        return BusinessTransmissionStats(
            business_id=business_id,
            pending=counts[TransmissionStatus.PENDING.value],
            processing=counts[TransmissionStatus.PROCESSING.value],
            sent=counts[TransmissionStatus.SENT.value],
            error=counts[TransmissionStatus.ERROR.value],
            last_processed_at=config.last_processed_at if config else None,
            last_submission_attempt_at=config.last_submission_attempt_at if config else None,
            next_submission_eligible_at=next_eligible,
        )
