"""
Configuration tests: defaults, YAML loading, environment overrides and
validation.
"""

from decimal import Decimal

import pytest
import yaml

from titlechain.registry.config import (
    ConfigError,
    ConfigManager,
    ConfigValue,
    ValidationError,
    get_config,
    get_config_manager,
)


class TestDefaults:

    def test_default_values(self):
        config = get_config()
        assert config.anchor.gas_safety_margin.get() == Decimal("1.2")
        assert config.anchor.chain.get() == "simulated"
        assert config.transfer.escrow_rate.get() == Decimal("0.10")
        assert config.transfer.registration_fee.get() == Decimal("1000")
        assert config.reconciliation.claim_grace_seconds.get() == 300.0
        assert config.certificate.qr_error_correction.get() == "M"

    def test_defaults_validate(self):
        assert get_config_manager().validate() == []

    def test_singleton_until_reset(self):
        first = ConfigManager()
        first.set("anchor.chain", "sepolia")
        assert ConfigManager() is first
        ConfigManager.reset()
        assert ConfigManager().get("anchor.chain") == "simulated"


class TestOverrides:

    def test_set_coerces_strings(self):
        manager = get_config_manager()
        manager.set("anchor.gas_safety_margin", "1.5")
        manager.set("reconciliation.batch_size", "10")
        assert manager.get("anchor.gas_safety_margin") == Decimal("1.5")
        assert manager.get("reconciliation.batch_size") == 10

    def test_invalid_value_is_refused(self):
        manager = get_config_manager()
        with pytest.raises(ValidationError):
            manager.set("anchor.gas_safety_margin", "0.8")
        assert manager.get("anchor.gas_safety_margin") == Decimal("1.2")

    def test_unknown_path(self):
        with pytest.raises(ConfigError):
            get_config_manager().set("anchor.nope", 1)
        with pytest.raises(ConfigError):
            get_config_manager().set("anchor", 1)

    def test_environment_wins(self, monkeypatch):
        manager = get_config_manager()
        manager.set("transfer.stamp_duty_rate", "0.07")
        monkeypatch.setenv("TITLECHAIN_TRANSFER_STAMP_DUTY", "0.06")
        assert manager.get("transfer.stamp_duty_rate") == Decimal("0.06")

    def test_environment_bool_and_float(self, monkeypatch):
        value = ConfigValue(default=False, env_var="TITLECHAIN_TEST_FLAG")
        monkeypatch.setenv("TITLECHAIN_TEST_FLAG", "yes")
        assert value.get() is True
        monkeypatch.setenv("TITLECHAIN_ANCHOR_CONFIRM_TIMEOUT", "2.5")
        assert get_config().anchor.confirmation_timeout_seconds.get() == 2.5

    def test_invalid_environment_value_is_reported(self, monkeypatch):
        monkeypatch.setenv("TITLECHAIN_CERT_QR_ECC", "Z")
        errors = get_config_manager().validate()
        assert errors == ["certificate.qr_error_correction: validation failed for value Z"]


class TestFiles:

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "titlechain.yaml"
        path.write_text(
            "anchor:\n"
            "  gas_safety_margin: 1.35\n"
            "  confirmation_timeout_seconds: 5\n"
            "reconciliation:\n"
            "  batch_size: 7\n"
        )
        manager = get_config_manager()
        manager.load_from_file(path)

        assert manager.get("anchor.gas_safety_margin") == Decimal("1.35")
        assert manager.get("reconciliation.batch_size") == 7
        assert manager.loaded_paths == [path]

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("anchor:\n  gas_margin: 2\n")
        with pytest.raises(ConfigError, match="anchor.gas_margin"):
            get_config_manager().load_from_file(path)

    def test_section_must_be_mapping(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("anchor: 3\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            get_config_manager().load_from_file(path)

    def test_missing_and_malformed_files(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")
        broken = tmp_path / "broken.yaml"
        broken.write_text("anchor: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            get_config_manager().load_from_file(broken)

    def test_empty_file_is_ignored(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        get_config_manager().load_from_file(path)
        assert get_config_manager().validate() == []

    def test_load_defaults_from_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        (tmp_path / "titlechain.yaml").write_text("storage:\n  data_dir: /srv/titlechain\n")
        manager = get_config_manager()
        manager.load_defaults()
        assert manager.get("storage.data_dir") == "/srv/titlechain"


def test_yaml_dump_round_trips(tmp_path):
    manager = get_config_manager()
    manager.set("transfer.escrow_rate", "0.15")
    dumped = yaml.safe_load(manager.config.to_yaml())
    assert dumped["transfer"]["escrow_rate"] == "0.15"
    assert dumped["anchor"]["gas_safety_margin"] == "1.2"

    path = tmp_path / "dump.yaml"
    path.write_text(manager.config.to_yaml())
    ConfigManager.reset()
    fresh = get_config_manager()
    fresh.load_from_file(path)
    assert fresh.get("transfer.escrow_rate") == Decimal("0.15")
