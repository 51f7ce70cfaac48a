"""Domain models for the VERI*FACTU kernel."""

from verifactu_kernel.models.chain_record import MUTABLE_FIELDS, ChainRecord, TransmissionStatus
from verifactu_kernel.models.compliance_config import (
    ComplianceConfig,
    ComplianceEnvironment,
    ComplianceMode,
)
from verifactu_kernel.models.compliance_event import ComplianceEvent, ComplianceEventType

__all__ = [
    "ChainRecord",
    "TransmissionStatus",
    "MUTABLE_FIELDS",
    "ComplianceConfig",
    "ComplianceMode",
    "ComplianceEnvironment",
    "ComplianceEvent",
    "ComplianceEventType",
]
