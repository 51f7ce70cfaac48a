"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Chain records are a legal register: once a link is written its identity,
position, hashes and snapshot may never change, and no link may ever be
deleted (legal retention).  Only the transmission fields move as the worker
progresses.  Compliance events are an append-only log.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners here inspect attribute history and raise
ImmutabilityViolationError before any SQL is sent:

    session.flush()
         |
         v
    [before_update] --> _check_chain_record_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() ---------------------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Core-level ``update()`` statements bypass mapper events; the worker uses
them only for the transmission columns listed in MUTABLE_FIELDS.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity           | Rule
-----------------|-------------------------------------------------------
ChainRecord      | Only MUTABLE_FIELDS may change; never deleted
ComplianceEvent  | Never updated; never deleted

===============================================================================
USAGE
===============================================================================

Called once at startup (CLI bootstrap, test session):

    from verifactu_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - simulating tampering):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from verifactu_kernel.exceptions import ImmutabilityViolationError
from verifactu_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, entity_id, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_chain_record_immutability(mapper, connection, target):
    """Allow only transmission/bookkeeping columns to change."""
    from verifactu_kernel.models.chain_record import MUTABLE_FIELDS

    changed = sorted(
        attr.key
        for attr in inspect(target).attrs
        if attr.key not in MUTABLE_FIELDS and attr.history.has_changes()
    )
    if changed:
        _block(
            "ChainRecord",
            target.id,
            "UPDATE",
            f"Chain fields are immutable: {', '.join(changed)}",
        )


def _check_chain_record_delete(mapper, connection, target):
    _block("ChainRecord", target.id, "DELETE", "Chain records cannot be deleted")


def _check_compliance_event_immutability(mapper, connection, target):
    _block("ComplianceEvent", target.id, "UPDATE", "Compliance events are append-only")


def _check_compliance_event_delete(mapper, connection, target):
    _block("ComplianceEvent", target.id, "DELETE", "Compliance events cannot be deleted")


def _listeners():
    from verifactu_kernel.models.chain_record import ChainRecord
    from verifactu_kernel.models.compliance_event import ComplianceEvent

    return (
        (ChainRecord, "before_update", _check_chain_record_immutability),
        (ChainRecord, "before_delete", _check_chain_record_delete),
        (ComplianceEvent, "before_update", _check_compliance_event_immutability),
        (ComplianceEvent, "before_delete", _check_compliance_event_delete),
    )


def register_immutability_listeners():
    """Register all immutability listeners (idempotent)."""
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability listeners.

    WARNING: Only use this in tests that deliberately tamper with records
    to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
