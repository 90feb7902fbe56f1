"""
METATX Configuration System

Configuration for the relay core: ledger fee parameters, signature policy,
and observability switches. Values come from YAML files, environment
variables, and runtime overrides.

Configuration Sources (in order of precedence):
    1. Environment variables (METATX_*)
    2. Runtime overrides / loaded YAML files
    3. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml

T = TypeVar("T")

ETHER = 10 ** 18


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    The environment variable, when set, always wins over a stored value.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value, coercing strings from YAML/CLI and validating."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value!r}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to the default's type."""
        target_type = type(self.default)
        try:
            if target_type is bool:
                return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
            if target_type is int:
                return int(value, 0)  # type: ignore
        except ValueError as exc:
            raise ConfigError(f"Cannot coerce {value!r} to {target_type.__name__}") from exc
        return value  # type: ignore


@dataclass
class LedgerConfig:
    """Configuration for the serializing ledger executor."""
    chain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=31337,
        env_var="METATX_LEDGER_CHAIN_ID",
        description="Chain identifier bound into every domain separator",
        validator=lambda x: 0 < x < 2 ** 256,
    ))
    gas_price: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1_000_000_000,
        env_var="METATX_LEDGER_GAS_PRICE",
        description="Fee per unit of gas charged to the submitter (wei)",
        validator=lambda x: x > 0,
    ))
    intrinsic_gas: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=21000,
        env_var="METATX_LEDGER_INTRINSIC_GAS",
        description="Gas charged per submitted transaction",
        validator=lambda x: x > 0,
    ))
    initial_balance: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10_000 * ETHER,
        env_var="METATX_LEDGER_INITIAL_BALANCE",
        description="Native balance granted by Ledger.fund() when no amount is given",
        validator=lambda x: x >= 0,
    ))


@dataclass
class SignatureConfig:
    """Configuration for signature recovery policy."""
    enforce_low_s: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="METATX_SIGNATURE_LOW_S",
        description="Reject signatures whose s value is in the upper half of the curve order",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging and audit."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="METATX_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    audit_enabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="METATX_AUDIT_ENABLED",
        description="Record authorization outcomes in the hash-chained audit log",
    ))


def _walk(section: Any, prefix: str = "") -> Iterator[Tuple[str, ConfigValue]]:
    """Yield (dotted path, ConfigValue) for every leaf under a config section."""
    for name in section.__dataclass_fields__:
        member = getattr(section, name)
        path = f"{prefix}{name}"
        if isinstance(member, ConfigValue):
            yield path, member
        else:
            yield from _walk(member, f"{path}.")


@dataclass
class MetaTxConfig:
    """Root of the section tree."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    signature: SignatureConfig = field(default_factory=SignatureConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Effective values, nested by section."""
        tree: Dict[str, Any] = {}
        for path, value in _walk(self):
            section, _, name = path.rpartition(".")
            tree.setdefault(section, {})[name] = value.get()
        return tree

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Process-wide holder of the active MetaTxConfig.

    Thread-safe singleton; tests reset it with ``ConfigManager._instance = None``.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._config = MetaTxConfig()
                instance._config_paths = []
                cls._instance = instance
            return cls._instance

    @property
    def config(self) -> MetaTxConfig:
        return self._config

    @property
    def loaded_files(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Apply a YAML mapping of ``section: {key: value}`` overrides."""
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        known = dict(_walk(self._config))
        updates: Dict[str, Any] = {}
        for section, values in data.items():
            if not isinstance(values, dict):
                raise ConfigError(f"Expected a mapping for section: {section}")
            for key, value in values.items():
                dotted = f"{section}.{key}"
                if dotted not in known:
                    raise ConfigError(f"Unknown config key: {dotted}")
                updates[dotted] = value
        for dotted, value in updates.items():
            known[dotted].set(value)
        self._config_paths.append(path)

    def _leaf(self, path: str) -> ConfigValue:
        for dotted, value in _walk(self._config):
            if dotted == path:
                return value
        raise ConfigError(f"Invalid config path: {path}")

    def set(self, path: str, value: Any) -> None:
        """Override one value, e.g. ``set("ledger.gas_price", 2_000_000_000)``."""
        self._leaf(path).set(value)

    def get(self, path: str) -> Any:
        """Effective value at ``path``, e.g. ``get("ledger.chain_id")``."""
        return self._leaf(path).get()

    def reset(self) -> None:
        """Drop runtime overrides and forget loaded files."""
        self._config = MetaTxConfig()
        self._config_paths = []

    def validate(self) -> List[str]:
        """Problems with the effective values; empty when all are usable."""
        errors: List[str] = []
        for path, value in _walk(self._config):
            try:
                current = value.get()
            except ConfigError as exc:
                errors.append(f"{path}: {exc}")
                continue
            if value.validator and not value.validator(current):
                errors.append(f"{path}: {current!r} rejected")
        return errors


def get_config() -> MetaTxConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
