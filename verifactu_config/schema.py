"""
ComplianceSettings schema.

Process-wide settings of the reporting subsystem, parsed from YAML by the
loader.  Per-business settings (mode, environment, flow-control interval,
batch size) are ComplianceConfig rows, not part of this schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerPreset:
    """Named bundle of per-business defaults plus retry policy.

    ``max_records_per_batch`` and ``flow_control_interval_seconds`` are
    copied onto a business's ComplianceConfig when the preset is applied;
    ``max_retries`` and ``backoff_base_seconds`` feed the worker policy.
    """

    name: str
    max_records_per_batch: int
    flow_control_interval_seconds: int
    max_retries: int
    backoff_base_seconds: int


@dataclass(frozen=True)
class WorkerSettings:
    preset: str | None = None
    max_retries: int = 3
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600
    processing_timeout_seconds: int = 600
    submission_timeout_seconds: int = 30
    max_parallel_businesses: int = 4
    tick_interval_seconds: int = 60
    presets: dict[str, WorkerPreset] = field(default_factory=dict)

    @property
    def active_preset(self) -> WorkerPreset | None:
        if self.preset is None:
            return None
        return self.presets[self.preset]

    @property
    def effective_max_retries(self) -> int:
        preset = self.active_preset
        return preset.max_retries if preset else self.max_retries

    @property
    def effective_backoff_base_seconds(self) -> int:
        preset = self.active_preset
        return preset.backoff_base_seconds if preset else self.backoff_base_seconds


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertificateSettings:
    expiry_threshold_days: int = 30
    parse_timeout_seconds: float = 10.0
    check_interval_seconds: int = 86400
    base_dir: str | None = None
    encryption_key_hex: str | None = None  # AES-256-GCM key for passphrases


# ---------------------------------------------------------------------------
# QR
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QrSettings:
    base_url: str
    render_svg: bool = True


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComplianceSettings:
    """Everything the process needs to build the registry, worker and monitor."""

    database: DatabaseSettings
    worker: WorkerSettings
    certificates: CertificateSettings
    qr: QrSettings
    log_level: str = "INFO"
    checksum: str = ""
