"""
CertificateStore -- reads PKCS#12 signing certificates.

Responsibility:
    Turns an opaque certificate reference plus passphrase into the
    certificate's validity window and, for signing, its private key.
    References are file paths, resolved against an optional base directory.

Architecture position:
    Kernel > Services.  Blocking I/O and CPU-bound parsing.  Callers go
    through ``load_with_timeout``, which runs the parse in a cancellable
    future so a stuck read never holds the worker or an install.

Failure modes:
    - CertificateMissingError if the reference does not resolve to a file.
    - CertificateUnreadableError if the blob, passphrase or key is invalid.
    - CertificateTimeoutError (retryable) from load_with_timeout.
"""

from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import UUID

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from verifactu_kernel.exceptions import (
    CertificateMissingError,
    CertificateTimeoutError,
    CertificateUnreadableError,
)
from verifactu_kernel.logging_config import get_logger

logger = get_logger("services.certificate_store")

DEFAULT_PARSE_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class CertificateInfo:
    """Validity window and identity of a signing certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime


@dataclass(frozen=True)
class LoadedCertificate:
    """Parsed PKCS#12 bundle able to sign submission documents."""

    info: CertificateInfo
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def sign(self, data: bytes) -> str:
        """Base64 signature over ``data`` (RSA PKCS#1 v1.5 or ECDSA, SHA-256)."""
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            signature = self.private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        else:
            signature = self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode("ascii")

    def verify(self, data: bytes, signature_b64: str) -> bool:
        """Check a signature produced by ``sign`` against the certificate's key."""
        from cryptography.exceptions import InvalidSignature

        public_key = self.certificate.public_key()
        signature = base64.b64decode(signature_b64)
        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
            else:
                public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True


class CertificateStore:
    """File-backed PKCS#12 store."""

    def __init__(self, base_dir: str | Path | None = None):
        self._base_dir = Path(base_dir) if base_dir is not None else None

    def resolve(self, certificate_ref: str) -> Path:
        path = Path(certificate_ref)
        if self._base_dir is not None and not path.is_absolute():
            path = self._base_dir / path
        return path

    def read_blob(self, business_id: UUID, certificate_ref: str | None) -> bytes:
        if not certificate_ref:
            raise CertificateMissingError(str(business_id))
        path = self.resolve(certificate_ref)
        if not path.is_file():
            raise CertificateMissingError(str(business_id))
        return path.read_bytes()

    def load(self, business_id: UUID, certificate_ref: str | None, passphrase: str | None) -> LoadedCertificate:
        """
        Parse the PKCS#12 bundle.

        Raises:
            CertificateMissingError: no reference or no file.
            CertificateUnreadableError: wrong passphrase, corrupt blob,
                or a bundle without key or certificate.
        """
        blob = self.read_blob(business_id, certificate_ref)
        try:
            key, certificate, _chain = pkcs12.load_key_and_certificates(
                blob,
                passphrase.encode("utf-8") if passphrase else None,
            )
        except ValueError as exc:
            logger.warning(
                "certificate_parse_failed",
                extra={"business_id": str(business_id), "reason": str(exc)},
            )
            raise CertificateUnreadableError(str(business_id), str(exc)) from exc

        if certificate is None or key is None:
            raise CertificateUnreadableError(str(business_id), "bundle lacks certificate or private key")
        if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise CertificateUnreadableError(
                str(business_id), f"unsupported key type {type(key).__name__}"
            )

        info = CertificateInfo(
            subject=certificate.subject.rfc4514_string(),
            issuer=certificate.issuer.rfc4514_string(),
            serial_number=format(certificate.serial_number, "X"),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
        )
        return LoadedCertificate(info=info, certificate=certificate, private_key=key)

    def inspect(self, business_id: UUID, certificate_ref: str | None, passphrase: str | None) -> CertificateInfo:
        return self.load(business_id, certificate_ref, passphrase).info

    def delete(self, certificate_ref: str) -> bool:
        """Remove the stored blob; False when there was nothing to remove."""
        path = self.resolve(certificate_ref)
        if not path.is_file():
            return False
        path.unlink()
        return True


def load_with_timeout(
    store: CertificateStore,
    business_id: UUID,
    certificate_ref: str | None,
    passphrase: str | None,
    timeout_seconds: float = DEFAULT_PARSE_TIMEOUT_SECONDS,
) -> LoadedCertificate:
    """``store.load`` bounded by ``timeout_seconds``.

    Raises:
        CertificateTimeoutError: The read did not finish in time.
        CertificateMissingError / CertificateUnreadableError: From the store.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="certificate-parse")
    future = executor.submit(store.load, business_id, certificate_ref, passphrase)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(
            "certificate_parse_timeout",
            extra={"business_id": str(business_id), "timeout_seconds": timeout_seconds},
        )
        raise CertificateTimeoutError(str(business_id), timeout_seconds) from None
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
