"""Pure domain core - snapshot, canonical form, XML codec, QR, clock."""
