"""
Deterministic chain hashing.

Every chain hash in the kernel is produced here so the registry, the
verifier and the QR builder agree on one definition:

    current_hash = SHA256(canonical_bytes + b"&Huella=" + previous_hash)

rendered as 64 upper-case hex characters.  The first record of a business
chains from GENESIS_HASH.
"""

import hashlib

GENESIS_HASH = "0" * 64

HASH_LENGTH = 64

# Characters of current_hash carried in the QR payload
VERIFICATION_FRAGMENT_LENGTH = 8


def chain_hash(canonical: bytes, previous_hash: str) -> str:
    """
    Compute the chain hash of one record.

    Args:
        canonical: Canonicalizer output for the invoice snapshot.
        previous_hash: Prior record's current_hash, or GENESIS_HASH.

    Returns:
        Upper-case hex SHA-256 (64 characters).
    """
    if len(previous_hash) != HASH_LENGTH:
        raise ValueError(f"previous_hash must be {HASH_LENGTH} hex chars, got {previous_hash!r}")
    digest = hashlib.sha256()
    digest.update(canonical)
    digest.update(b"&Huella=")
    digest.update(previous_hash.upper().encode("ascii"))
    return digest.hexdigest().upper()


def verification_fragment(current_hash: str) -> str:
    """Leading characters of a chain hash, as printed in the QR payload."""
    return current_hash[:VERIFICATION_FRAGMENT_LENGTH]
