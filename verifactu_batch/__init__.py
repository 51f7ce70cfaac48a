"""
verifactu_batch -- Transmission worker and scheduling for registered invoices.

Consumes pending chain records, submits them to the tax authority through an
opaque gateway under per-business flow control, and runs the periodic
certificate refresh.  Also hosts the administrative surface and the
``verifactu`` command line.

Architecture:
    verifactu_batch/ is a top-level package.  It imports from
    verifactu_kernel and verifactu_config; nothing in verifactu_kernel
    imports from verifactu_batch.

Rules:
    - Records of one business are submitted strictly in sequence order,
      one submission at a time, spaced by the business's flow-control
      interval.  Businesses run in parallel.
    - No database lock or transaction is held across a gateway call.
    - Every state change goes through the pure transition function in
      verifactu_batch.domain.transmission.
    - All timestamps and waits go through the injected Clock.
"""
