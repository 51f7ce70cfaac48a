"""Pure types and rules of the transmission worker.  ZERO I/O."""
