"""
Settings loader (``verifactu_config.loader``).

Responsibility
--------------
Reads ``defaults.yaml``, deep-merges an optional override file and the
environment overrides on top, and parses the result into the frozen
``verifactu_config.schema`` dataclasses.  The single public entry point for
runtime settings is ``verifactu_config.get_active_settings()``.

Failure modes
-------------
* Missing override file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range or mistyped values  -> ``ValueError``.
"""

from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from verifactu_config.schema import (
    CertificateSettings,
    ComplianceSettings,
    DatabaseSettings,
    QrSettings,
    WorkerPreset,
    WorkerSettings,
)

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

ENV_CONFIG_PATH = "VERIFACTU_CONFIG"
ENV_DATABASE_URL = "DATABASE_URL"
ENV_ENCRYPTION_KEY = "VERIFACTU_ENCRYPTION_KEY"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_environment(data: Mapping[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay DATABASE_URL and VERIFACTU_ENCRYPTION_KEY."""
    overrides: dict[str, Any] = {}
    if environ.get(ENV_DATABASE_URL):
        overrides["database"] = {"url": environ[ENV_DATABASE_URL]}
    if environ.get(ENV_ENCRYPTION_KEY):
        overrides["certificates"] = {"encryption_key_hex": environ[ENV_ENCRYPTION_KEY]}
    return deep_merge(data, overrides)


def compute_checksum(data: Mapping[str, Any]) -> str:
    """Deterministic SHA-256 over the merged settings (secrets excluded)."""
    scrubbed = deep_merge(data, {"certificates": {"encryption_key_hex": None}})
    canonical = json.dumps(scrubbed, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _positive_int(section: str, data: Mapping[str, Any], key: str, *, allow_zero: bool = False) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{section}.{key} must be an integer, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{section}.{key} must be {'>= 0' if allow_zero else '> 0'}, got {value}")
    return value


def _positive_number(section: str, data: Mapping[str, Any], key: str) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{section}.{key} must be a positive number, got {value!r}")
    return float(value)


def parse_database(data: Mapping[str, Any]) -> DatabaseSettings:
    url = data["url"]
    if not isinstance(url, str) or "://" not in url:
        raise ValueError(f"database.url is not a database URL: {url!r}")
    return DatabaseSettings(
        url=url,
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int("database", data, "pool_size"),
        max_overflow=_positive_int("database", data, "max_overflow", allow_zero=True),
        pool_timeout=_positive_int("database", data, "pool_timeout"),
    )


def parse_preset(name: str, data: Mapping[str, Any]) -> WorkerPreset:
    section = f"worker.presets.{name}"
    return WorkerPreset(
        name=name,
        max_records_per_batch=_positive_int(section, data, "max_records_per_batch"),
        flow_control_interval_seconds=_positive_int(
            section, data, "flow_control_interval_seconds", allow_zero=True
        ),
        max_retries=_positive_int(section, data, "max_retries"),
        backoff_base_seconds=_positive_int(section, data, "backoff_base_seconds", allow_zero=True),
    )


def parse_worker(data: Mapping[str, Any]) -> WorkerSettings:
    presets = {
        name: parse_preset(name, preset)
        for name, preset in (data.get("presets") or {}).items()
    }
    preset = data.get("preset")
    if preset is not None and preset not in presets:
        raise ValueError(f"worker.preset {preset!r} is not one of {sorted(presets)}")

    settings = WorkerSettings(
        preset=preset,
        max_retries=_positive_int("worker", data, "max_retries"),
        backoff_base_seconds=_positive_int("worker", data, "backoff_base_seconds", allow_zero=True),
        backoff_max_seconds=_positive_int("worker", data, "backoff_max_seconds"),
        processing_timeout_seconds=_positive_int("worker", data, "processing_timeout_seconds"),
        submission_timeout_seconds=_positive_int("worker", data, "submission_timeout_seconds"),
        max_parallel_businesses=_positive_int("worker", data, "max_parallel_businesses"),
        tick_interval_seconds=_positive_int("worker", data, "tick_interval_seconds"),
        presets=presets,
    )
    if settings.backoff_max_seconds < settings.effective_backoff_base_seconds:
        raise ValueError("worker.backoff_max_seconds must be >= the backoff base")
    return settings


def parse_certificates(data: Mapping[str, Any]) -> CertificateSettings:
    key_hex = data.get("encryption_key_hex")
    if key_hex is not None:
        try:
            key = bytes.fromhex(key_hex)
        except (TypeError, ValueError) as exc:
            raise ValueError("certificates.encryption_key_hex is not hex") from exc
        if len(key) != 32:
            raise ValueError("certificates.encryption_key_hex must encode 32 bytes")
    return CertificateSettings(
        expiry_threshold_days=_positive_int("certificates", data, "expiry_threshold_days", allow_zero=True),
        parse_timeout_seconds=_positive_number("certificates", data, "parse_timeout_seconds"),
        check_interval_seconds=_positive_int("certificates", data, "check_interval_seconds"),
        base_dir=data.get("base_dir"),
        encryption_key_hex=key_hex,
    )


def parse_qr(data: Mapping[str, Any]) -> QrSettings:
    base_url = data["base_url"]
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        raise ValueError(f"qr.base_url must be an http(s) URL, got {base_url!r}")
    return QrSettings(base_url=base_url, render_svg=bool(data.get("render_svg", True)))


def parse_settings(data: Mapping[str, Any]) -> ComplianceSettings:
    """
    Parse merged settings into ``ComplianceSettings``.

    Raises:
        KeyError: if a required section or key is missing.
        ValueError: if a value is out of range or mistyped.
    """
    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")
    return ComplianceSettings(
        database=parse_database(data["database"]),
        worker=parse_worker(data["worker"]),
        certificates=parse_certificates(data["certificates"]),
        qr=parse_qr(data["qr"]),
        log_level=log_level,
        checksum=compute_checksum(data),
    )


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ComplianceSettings:
    """Defaults, then the override file, then the environment."""
    environ = environ if environ is not None else {}
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = deep_merge(data, load_yaml_file(Path(path)))
    data = apply_environment(data, environ)
    return parse_settings(data)
