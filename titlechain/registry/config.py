"""
Titlechain Registry Configuration

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (TITLECHAIN_*)
    2. Runtime overrides
    3. Loaded config files (later files win)
    4. Default values

Default files, loaded when present:
    ./titlechain.yaml, ./config/titlechain.yaml, ~/.titlechain/config.yaml

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # Don't log if True
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        elif isinstance(self.default, Decimal) and not isinstance(value, Decimal):
            value = Decimal(str(value))  # type: ignore
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value}")

        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == Decimal:
            return Decimal(value)  # type: ignore
        else:
            return value  # type: ignore


@dataclass
class AnchorConfig:
    """Configuration for the ledger anchor."""
    chain: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="simulated",
        env_var="TITLECHAIN_ANCHOR_CHAIN",
        description="Ledger network name recorded on anchor receipts",
    ))
    contract_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="0x" + "0" * 39 + "1",
        env_var="TITLECHAIN_ANCHOR_CONTRACT",
        description="Address of the land registry contract",
        validator=lambda x: isinstance(x, str) and x.startswith("0x") and len(x) == 42,
    ))
    gas_safety_margin: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("1.2"),
        env_var="TITLECHAIN_ANCHOR_GAS_MARGIN",
        description="Multiplier applied to the gas estimate before submission",
        validator=lambda x: x >= Decimal("1"),
    ))
    confirmation_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="TITLECHAIN_ANCHOR_CONFIRM_TIMEOUT",
        description="Bounded wait for a transaction receipt",
        validator=lambda x: x > 0,
    ))
    breaker_failure_threshold: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="TITLECHAIN_ANCHOR_BREAKER_THRESHOLD",
        description="Consecutive submission failures before the breaker opens",
        validator=lambda x: x > 0,
    ))
    breaker_reset_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="TITLECHAIN_ANCHOR_BREAKER_RESET",
        description="Seconds before an open breaker admits a probe call",
        validator=lambda x: x > 0,
    ))


@dataclass
class CertificateConfig:
    """Configuration for certificate minting."""
    gateway_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://ipfs.io/ipfs/",
        env_var="TITLECHAIN_CERT_GATEWAY",
        description="Base URL that resolves content hashes",
        validator=lambda x: x.startswith(("http://", "https://")),
    ))
    verify_base_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://titlechain.local/verify/",
        env_var="TITLECHAIN_CERT_VERIFY_URL",
        description="Public verification endpoint embedded in QR codes",
        validator=lambda x: x.startswith(("http://", "https://")),
    ))
    signing_key_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="keys/registry-ed25519.jwk",
        env_var="TITLECHAIN_CERT_SIGNING_KEY",
        description="Ed25519 JWK used to sign certificates, relative to the data dir",
        secret=True,
    ))
    qr_error_correction: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="M",
        env_var="TITLECHAIN_CERT_QR_ECC",
        description="QR error correction level (L, M, Q, H)",
        validator=lambda x: x in ("L", "M", "Q", "H"),
    ))
    store_retry_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="TITLECHAIN_CERT_STORE_RETRIES",
        description="Attempts per content-store write",
        validator=lambda x: x >= 1,
    ))


@dataclass
class TransferConfig:
    """Configuration for transfer charges."""
    escrow_rate: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("0.10"),
        env_var="TITLECHAIN_TRANSFER_ESCROW_RATE",
        description="Share of the agreed amount held in escrow",
        validator=lambda x: Decimal("0") <= x <= Decimal("1"),
    ))
    stamp_duty_rate: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("0.05"),
        env_var="TITLECHAIN_TRANSFER_STAMP_DUTY",
        description="Stamp duty as a share of the agreed amount",
        validator=lambda x: Decimal("0") <= x <= Decimal("1"),
    ))
    registration_fee: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("1000"),
        env_var="TITLECHAIN_TRANSFER_REG_FEE",
        description="Flat registration fee",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ReconciliationConfig:
    """Configuration for the background reconciliation pass."""
    interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="TITLECHAIN_RECONCILE_INTERVAL",
        description="Seconds between reconciliation passes",
        validator=lambda x: x > 0,
    ))
    batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=50,
        env_var="TITLECHAIN_RECONCILE_BATCH",
        description="Maximum parked sagas re-driven per pass",
        validator=lambda x: x > 0,
    ))
    claim_grace_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=300.0,
        env_var="TITLECHAIN_CLAIM_GRACE",
        description="Age after which an asset claim with no transfer is released",
        validator=lambda x: x >= 0,
    ))


@dataclass
class StorageConfig:
    """Configuration for document and artifact storage."""
    data_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=".titlechain",
        env_var="TITLECHAIN_DATA_DIR",
        description="Root directory for file-backed stores",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="TITLECHAIN_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="TITLECHAIN_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RegistryConfig:
    """
    Root configuration for the registry.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    anchor: AnchorConfig = field(default_factory=AnchorConfig)
    certificate: CertificateConfig = field(default_factory=CertificateConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary; decimals become strings."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                return str(value) if isinstance(value, Decimal) else value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = RegistryConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> RegistryConfig:
        """Get the current configuration."""
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")
        self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("titlechain.yaml"),
            Path("config/titlechain.yaml"),
            Path.home() / ".titlechain" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Config section {prefix}{key} must be a mapping")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("anchor.gas_safety_margin", "1.5")
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("transfer.escrow_rate")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except Exception as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> RegistryConfig:
    """Get the current registry configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
