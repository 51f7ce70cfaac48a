"""
EventLog -- appends ComplianceEvent rows inside the caller's transaction.
"""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.models.compliance_event import ComplianceEvent, ComplianceEventType
from verifactu_kernel.services.base import BaseService

logger = get_logger("services.event_log")


class EventLog(BaseService):
    """Append-only operational log writer."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def record(
        self,
        business_id: UUID,
        event_type: ComplianceEventType,
        record_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ComplianceEvent:
        event = ComplianceEvent(
            business_id=business_id,
            record_id=record_id,
            event_type=event_type.value,
            occurred_at=self._clock.now(),
            payload=payload,
        )
        self.session.add(event)
        self.session.flush()
        logger.debug(
            "compliance_event_recorded",
            extra={
                "business_id": str(business_id),
                "event_type": event_type.value,
                "record_id": str(record_id) if record_id else None,
            },
        )
        return event
