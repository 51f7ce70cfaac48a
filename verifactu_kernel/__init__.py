"""
VERI*FACTU Kernel

A tamper-evident invoice-reporting kernel with:
- Per-business hash chains over canonical invoice snapshots
- Gap-free, linearizable sequence assignment
- Fixed-schema XML documents and verifiable QR payloads
- Signing-certificate lifecycle monitoring
"""

__version__ = "0.1.0"
