"""
verifactu_config -- single public entrypoint for process settings.

Responsibility:
    Provides the ONLY way to obtain process-wide settings at runtime
    through ``get_active_settings()``.  No other component reads settings
    files or environment variables directly.

Architecture position:
    Configuration.  Sits beside ``verifactu_kernel``; the kernel MUST NEVER
    import from ``verifactu_config``.  ``verifactu_batch`` translates
    settings into kernel and worker constructor arguments.

Failure modes:
    - ``FileNotFoundError`` -- override file named but missing.
    - ``ValueError`` / ``KeyError`` -- invalid or missing values.

Audit relevance:
    Every successful ``get_active_settings()`` call emits a
    ``VERIFACTU_CONFIG_TRACE`` log entry with the settings checksum, so
    worker runs can be tied back to the exact settings that governed them.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from verifactu_config.loader import ENV_CONFIG_PATH, load_settings
from verifactu_config.schema import ComplianceSettings

_logger = logging.getLogger("verifactu_kernel.config")

__all__ = ["ComplianceSettings", "get_active_settings"]


def get_active_settings(
    config_path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ComplianceSettings:
    """The ONLY public settings entrypoint.

    Args:
        config_path: Override file; defaults to ``$VERIFACTU_CONFIG`` when set.
        environ: Environment mapping (``os.environ`` when None).
    """
    environ = os.environ if environ is None else environ
    if config_path is None and environ.get(ENV_CONFIG_PATH):
        config_path = environ[ENV_CONFIG_PATH]

    settings = load_settings(Path(config_path) if config_path else None, environ)

    _logger.info(
        "VERIFACTU_CONFIG_TRACE",
        extra={
            "config_path": str(config_path) if config_path else None,
            "checksum": settings.checksum,
            "worker_preset": settings.worker.preset,
            "database_dialect": settings.database.url.split("://", 1)[0],
        },
    )
    return settings
