"""
BaseService -- abstract base for session-scoped kernel services.

Responsibility:
    Common constructor and session-handling contract for services that
    work inside a caller-owned transaction.  They persist with
    ``session.flush()`` and never ``session.commit()``.

Architecture position:
    Kernel > Services.  ChainRegistry, CertificateMonitor and the batch
    worker own their units of work through a session factory instead and
    compose these services inside them.

Failure modes:
    - A subclass that commits breaks the atomicity of the enclosing unit
      of work (e.g. record insert + sequence advance + event).
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for flush-only services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``; the caller controls transaction
          boundaries.
    """

    def __init__(self, session: Session):
        self.session = session
