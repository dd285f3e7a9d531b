import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import tomli_w

from llm_meter.errors import ConfigError, ProviderNotVerifiedError
from llm_meter.models import PricingRule, ProviderConfig, ProviderSettings

if TYPE_CHECKING:
    from llm_meter.coordinator import ConnectionTestCoordinator

logger = structlog.get_logger()

HOME_ENV = "LLM_METER_HOME"


def normalize_provider_name(provider: "str") -> "str":
    return provider.strip().lower()


def default_home() -> "Path":
    custom = os.environ.get(HOME_ENV, "")
    if custom:
        return Path(custom)
    return Path.home() / ".llm-meter"


@dataclass
class Config:
    home: "Path" = field(default_factory=default_home)
    # seconds between refresh cycles in watch mode
    refresh_seconds: "int" = 60
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"
    # listen_address: format ":9185" or
    # "0.0.0.0:9185"
    listen_address: "str" = ":9185"
    # entries kept per provider in the connection test log
    test_log_capacity: "int" = 100

    enabled_providers: "list[str]" = field(default_factory=list)
    provider_settings: "dict[str, ProviderSettings]" = field(default_factory=dict)
    pricing_overrides: "list[PricingRule]" = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            home=default_home(),
            log_level=os.environ.get("LLM_METER_LOG_LEVEL", "info"),
            log_format=os.environ.get("LLM_METER_LOG_FORMAT", "console"),
        )

    @property
    def config_path(self) -> "Path":
        return self.home / "config" / "config.toml"

    @property
    def db_path(self) -> "Path":
        return self.home / "data" / "snapshots.sqlite"

    def settings_for(self, provider: "str") -> "ProviderSettings":
        return self.provider_settings.get(
            normalize_provider_name(provider), ProviderSettings()
        )

    def normalize(self) -> "bool":
        """
        lower-cases and trims every provider name and drops duplicate
        enabled entries, keeping the first occurrence. Returns True
        when anything changed.
        """
        changed = False

        enabled: "list[str]" = []
        for name in self.enabled_providers:
            normalized = normalize_provider_name(name)
            if normalized != name or normalized in enabled:
                changed = True
            if normalized not in enabled:
                enabled.append(normalized)
        self.enabled_providers = enabled

        settings: "dict[str, ProviderSettings]" = {}
        for name, value in self.provider_settings.items():
            normalized = normalize_provider_name(name)
            if normalized != name:
                changed = True
            settings[normalized] = value
        self.provider_settings = settings

        overrides: "list[PricingRule]" = []
        for rule in self.pricing_overrides:
            normalized = normalize_provider_name(rule.provider)
            if normalized != rule.provider:
                changed = True
                rule = PricingRule(
                    provider=normalized,
                    model_pattern=rule.model_pattern,
                    input_per_1m=rule.input_per_1m,
                    output_per_1m=rule.output_per_1m,
                )
            overrides.append(rule)
        self.pricing_overrides = overrides

        return changed

    def to_document(self) -> "dict[str, Any]":
        settings: "dict[str, dict[str, str]]" = {}
        for name, value in self.provider_settings.items():
            entry: "dict[str, str]" = {}
            if value.base_url:
                entry["base_url"] = value.base_url
            if value.organization_id:
                entry["organization_id"] = value.organization_id
            settings[name] = entry

        return {
            "refresh_seconds": self.refresh_seconds,
            "test_log_capacity": self.test_log_capacity,
            "enabled_providers": list(self.enabled_providers),
            "provider_settings": settings,
            "pricing_overrides": [
                {
                    "provider": r.provider,
                    "model_pattern": r.model_pattern,
                    "input_per_1m": r.input_per_1m,
                    "output_per_1m": r.output_per_1m,
                }
                for r in self.pricing_overrides
            ],
        }


def _parse_settings(raw: "object") -> "dict[str, ProviderSettings]":
    if not isinstance(raw, dict):
        raise ConfigError("provider_settings must be a table")

    settings: "dict[str, ProviderSettings]" = {}
    for name, table in raw.items():
        if not isinstance(table, dict):
            raise ConfigError(f"provider_settings.{name} must be a table")
        for key in ("base_url", "organization_id"):
            value = table.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"provider_settings.{name}.{key} must be a string")
        settings[name] = ProviderSettings(
            base_url=table.get("base_url") or None,
            organization_id=table.get("organization_id") or None,
        )
    return settings


def _parse_overrides(raw: "object") -> "list[PricingRule]":
    if not isinstance(raw, list):
        raise ConfigError("pricing_overrides must be an array of tables")

    rules: "list[PricingRule]" = []
    for index, item in enumerate(raw):
        try:
            rules.append(
                PricingRule(
                    provider=str(item["provider"]),
                    model_pattern=str(item["model_pattern"]),
                    input_per_1m=float(item["input_per_1m"]),
                    output_per_1m=float(item["output_per_1m"]),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"pricing_overrides[{index}] is invalid: {exc}") from exc
    return rules


def load_config(base: "Config | None" = None) -> "Config":
    """
    reads config.toml under the home directory on top of base.
    A missing file yields the defaults. Names are normalized and a
    file that needed normalizing is written back.
    """
    config = base or Config.from_env()
    path = config.config_path
    if not path.exists():
        return config

    try:
        with path.open("rb") as f:
            doc = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc

    try:
        config.refresh_seconds = int(doc.get("refresh_seconds", config.refresh_seconds))
        config.test_log_capacity = int(
            doc.get("test_log_capacity", config.test_log_capacity)
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid number in {path}: {exc}") from exc

    enabled = doc.get("enabled_providers", [])
    if not isinstance(enabled, list):
        raise ConfigError("enabled_providers must be an array")
    config.enabled_providers = [str(name) for name in enabled]
    config.provider_settings = _parse_settings(doc.get("provider_settings", {}))
    config.pricing_overrides = _parse_overrides(doc.get("pricing_overrides", []))

    if config.normalize():
        logger.info("config_normalized", path=str(path))
        save_config(config)

    return config


def save_config(config: "Config") -> "None":
    path = config.config_path
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as f:
            tomli_w.dump(config.to_document(), f)
    except OSError as exc:
        raise ConfigError(f"cannot write {path}: {exc}") from exc


def ensure_initialized(config: "Config") -> "None":
    """
    creates the config and data directories and a default
    config file when none exists yet.
    """
    try:
        config.config_path.parent.mkdir(parents=True, exist_ok=True)
        config.db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"cannot create {config.home}: {exc}") from exc

    if not config.config_path.exists():
        save_config(config)


class ProviderRegistry:
    """
    ProviderRegistry owns the configured providers and their enabled
    flags. Enabling is gated on the latest connection test reported
    by the coordinator, so without one nothing can be enabled;
    disabling is always allowed.
    """

    def __init__(
        self,
        config: "Config",
        coordinator: "ConnectionTestCoordinator | None" = None,
    ) -> "None":
        self._config = config
        self._coordinator = coordinator

    def get(self, name: "str") -> "ProviderConfig":
        name = normalize_provider_name(name)
        return ProviderConfig(
            name=name,
            settings=self._config.settings_for(name),
            enabled=name in self._config.enabled_providers,
        )

    def names(self) -> "list[str]":
        names = list(self._config.enabled_providers)
        for name in self._config.provider_settings:
            if name not in names:
                names.append(name)
        return names

    def enabled(self) -> "list[str]":
        return list(self._config.enabled_providers)

    def is_enabled(self, name: "str") -> "bool":
        return normalize_provider_name(name) in self._config.enabled_providers

    def add(self, name: "str", settings: "ProviderSettings") -> "ProviderConfig":
        """
        registers or updates a provider. New providers start disabled.
        """
        name = normalize_provider_name(name)
        if not name:
            raise ConfigError("provider name is required")
        self._config.provider_settings[name] = settings
        return self.get(name)

    def remove(self, name: "str") -> "None":
        name = normalize_provider_name(name)
        self._config.provider_settings.pop(name, None)
        self.disable(name)

    def enable(self, name: "str") -> "None":
        name = normalize_provider_name(name)
        if self._coordinator is None or not self._coordinator.is_verified(name):
            raise ProviderNotVerifiedError(name)

        if name not in self._config.enabled_providers:
            self._config.enabled_providers.append(name)
        self._config.provider_settings.setdefault(name, ProviderSettings())
        logger.info("provider_enabled", provider=name)

    def disable(self, name: "str") -> "None":
        name = normalize_provider_name(name)
        if name in self._config.enabled_providers:
            self._config.enabled_providers.remove(name)
            logger.info("provider_disabled", provider=name)
