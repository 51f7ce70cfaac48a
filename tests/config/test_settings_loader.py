"""Tests for verifactu_config: defaults, override files, environment and validation."""

from __future__ import annotations

import pytest
import yaml

from verifactu_config import get_active_settings
from verifactu_config.loader import compute_checksum, deep_merge, load_settings, load_yaml_file

KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


def _write(tmp_path, data, name="override.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:

    def test_builtin_defaults(self):
        settings = load_settings()

        assert settings.database.url == "sqlite:///verifactu.db"
        assert settings.worker.max_retries == 3
        assert settings.worker.backoff_base_seconds == 60
        assert settings.worker.processing_timeout_seconds == 600
        assert settings.certificates.expiry_threshold_days == 30
        assert settings.certificates.encryption_key_hex is None
        assert settings.qr.base_url.startswith("https://")
        assert settings.log_level == "INFO"
        assert set(settings.worker.presets) == {"testing", "production", "high_volume"}

    def test_no_preset_means_plain_values(self):
        worker = load_settings().worker

        assert worker.active_preset is None
        assert worker.effective_max_retries == worker.max_retries


class TestOverrides:

    def test_override_file_is_deep_merged(self, tmp_path):
        path = _write(tmp_path, {"worker": {"max_retries": 7}, "log_level": "debug"})

        settings = load_settings(path)

        assert settings.worker.max_retries == 7
        assert settings.worker.backoff_base_seconds == 60
        assert settings.log_level == "DEBUG"

    def test_environment_wins_over_file(self, tmp_path):
        path = _write(tmp_path, {"database": {"url": "sqlite:///file.db"}})

        settings = load_settings(
            path,
            {"DATABASE_URL": "postgresql://localhost/verifactu", "VERIFACTU_ENCRYPTION_KEY": KEY_HEX},
        )

        assert settings.database.url == "postgresql://localhost/verifactu"
        assert settings.certificates.encryption_key_hex == KEY_HEX

    def test_config_path_from_environment(self, tmp_path):
        path = _write(tmp_path, {"worker": {"tick_interval_seconds": 5}})

        settings = get_active_settings(environ={"VERIFACTU_CONFIG": str(path)})

        assert settings.worker.tick_interval_seconds == 5

    def test_active_preset_drives_effective_policy(self, tmp_path):
        path = _write(tmp_path, {"worker": {"preset": "production"}})

        worker = load_settings(path).worker

        assert worker.active_preset.name == "production"
        assert worker.effective_max_retries == 3
        assert worker.effective_backoff_base_seconds == 300

    def test_missing_override_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError):
            load_yaml_file(path)


class TestValidation:

    @pytest.mark.parametrize(
        "override",
        [
            {"log_level": "LOUD"},
            {"database": {"url": "not a url"}},
            {"worker": {"max_retries": 0}},
            {"worker": {"max_retries": "three"}},
            {"worker": {"preset": "unknown"}},
            {"worker": {"backoff_max_seconds": 30}},
            {"certificates": {"encryption_key_hex": "abcd"}},
            {"certificates": {"encryption_key_hex": "zz" * 32}},
            {"certificates": {"parse_timeout_seconds": 0}},
            {"qr": {"base_url": "ftp://example.com"}},
        ],
    )
    def test_invalid_values_are_refused(self, tmp_path, override):
        with pytest.raises(ValueError):
            load_settings(_write(tmp_path, override))


class TestChecksum:

    def test_checksum_is_stable(self):
        assert load_settings().checksum == load_settings().checksum

    def test_checksum_changes_with_settings(self, tmp_path):
        changed = load_settings(_write(tmp_path, {"worker": {"max_retries": 4}}))

        assert changed.checksum != load_settings().checksum

    def test_checksum_ignores_encryption_key(self):
        plain = load_settings()
        keyed = load_settings(environ={"VERIFACTU_ENCRYPTION_KEY": KEY_HEX})

        assert keyed.checksum == plain.checksum

    def test_deep_merge_leaves_inputs_untouched(self):
        base = {"a": {"b": 1, "c": 2}}

        merged = deep_merge(base, {"a": {"b": 3}})

        assert merged == {"a": {"b": 3, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}
        assert compute_checksum(base) != compute_checksum(merged)
