from pathlib import Path

import pytest

from llm_meter.config import (
    Config,
    ProviderRegistry,
    ensure_initialized,
    load_config,
    save_config,
)
from llm_meter.errors import ConfigError, ProviderNotVerifiedError
from llm_meter.models import PricingRule, ProviderSettings


class StubCoordinator:
    def __init__(self, *verified: "str") -> "None":
        self._verified = set(verified)

    def is_verified(self, provider: "str") -> "bool":
        return provider in self._verified


class TestConfigFromEnv:
    def test_defaults(
        self, monkeypatch: "pytest.MonkeyPatch", tmp_path: "Path"
    ) -> "None":
        monkeypatch.setenv("LLM_METER_HOME", str(tmp_path))
        monkeypatch.delenv("LLM_METER_LOG_LEVEL", raising=False)
        config = Config.from_env()
        assert config.home == tmp_path
        assert config.log_level == "info"
        assert config.config_path == tmp_path / "config" / "config.toml"
        assert config.db_path == tmp_path / "data" / "snapshots.sqlite"

    def test_home_defaults_to_user_directory(
        self, monkeypatch: "pytest.MonkeyPatch"
    ) -> "None":
        monkeypatch.delenv("LLM_METER_HOME", raising=False)
        assert Config.from_env().home == Path.home() / ".llm-meter"


class TestConfigFile:
    def test_missing_file_yields_defaults(self, tmp_path: "Path") -> "None":
        config = load_config(Config(home=tmp_path))
        assert config.enabled_providers == []
        assert config.refresh_seconds == 60

    def test_save_then_load(self, tmp_path: "Path") -> "None":
        config = Config(
            home=tmp_path,
            refresh_seconds=120,
            enabled_providers=["openai"],
            provider_settings={
                "openai": ProviderSettings(organization_id="org-1"),
                "anthropic": ProviderSettings(base_url="https://proxy.local/v1"),
            },
            pricing_overrides=[PricingRule("openai", "gpt-4o", 1.5, 2.5)],
        )
        save_config(config)

        loaded = load_config(Config(home=tmp_path))

        assert loaded.refresh_seconds == 120
        assert loaded.enabled_providers == ["openai"]
        assert loaded.settings_for("openai").organization_id == "org-1"
        assert loaded.settings_for("anthropic").base_url == "https://proxy.local/v1"
        assert loaded.pricing_overrides == [PricingRule("openai", "gpt-4o", 1.5, 2.5)]

    def test_names_are_normalized_and_written_back(self, tmp_path: "Path") -> "None":
        path = tmp_path / "config" / "config.toml"
        path.parent.mkdir(parents=True)
        path.write_text(
            'enabled_providers = [" OpenAI ", "openai", "Anthropic"]\n'
            "\n"
            "[provider_settings.OpenAI]\n"
            'organization_id = "org-9"\n'
            "\n"
            "[[pricing_overrides]]\n"
            'provider = "OPENAI"\n'
            'model_pattern = "gpt-4o"\n'
            "input_per_1m = 1.0\n"
            "output_per_1m = 2.0\n"
        )

        config = load_config(Config(home=tmp_path))

        assert config.enabled_providers == ["openai", "anthropic"]
        assert config.settings_for("openai").organization_id == "org-9"
        assert config.pricing_overrides[0].provider == "openai"
        assert "OpenAI" not in path.read_text()

    def test_invalid_override_raises(self, tmp_path: "Path") -> "None":
        path = tmp_path / "config" / "config.toml"
        path.parent.mkdir(parents=True)
        path.write_text('[[pricing_overrides]]\nprovider = "openai"\n')

        with pytest.raises(ConfigError):
            load_config(Config(home=tmp_path))

    def test_non_string_provider_setting_raises(self, tmp_path: "Path") -> "None":
        path = tmp_path / "config" / "config.toml"
        path.parent.mkdir(parents=True)
        path.write_text("[provider_settings.openai]\nbase_url = 5\n")

        with pytest.raises(ConfigError, match="base_url must be a string"):
            load_config(Config(home=tmp_path))

    def test_unparseable_file_raises(self, tmp_path: "Path") -> "None":
        path = tmp_path / "config" / "config.toml"
        path.parent.mkdir(parents=True)
        path.write_text("enabled_providers = [")

        with pytest.raises(ConfigError):
            load_config(Config(home=tmp_path))

    def test_ensure_initialized_creates_layout(self, tmp_path: "Path") -> "None":
        config = Config(home=tmp_path / "home")
        ensure_initialized(config)
        assert config.config_path.is_file()
        assert config.db_path.parent.is_dir()


class TestProviderRegistry:
    def test_added_provider_starts_disabled(self, tmp_path: "Path") -> "None":
        registry = ProviderRegistry(Config(home=tmp_path))
        provider = registry.add(" OpenAI ", ProviderSettings())
        assert provider.name == "openai"
        assert provider.enabled is False
        assert registry.names() == ["openai"]

    def test_enable_requires_verified_test(self, tmp_path: "Path") -> "None":
        config = Config(home=tmp_path)
        registry = ProviderRegistry(config, StubCoordinator("anthropic"))

        with pytest.raises(ProviderNotVerifiedError):
            registry.enable("openai")
        registry.enable("anthropic")

        assert config.enabled_providers == ["anthropic"]

    def test_enable_without_coordinator_is_refused(self, tmp_path: "Path") -> "None":
        registry = ProviderRegistry(Config(home=tmp_path))
        with pytest.raises(ProviderNotVerifiedError):
            registry.enable("openai")

    def test_disable_always_allowed(self, tmp_path: "Path") -> "None":
        config = Config(home=tmp_path, enabled_providers=["openai"])
        registry = ProviderRegistry(config)
        registry.disable("OPENAI")
        registry.disable("openai")
        assert not registry.is_enabled("openai")

    def test_remove_forgets_settings(self, tmp_path: "Path") -> "None":
        config = Config(
            home=tmp_path,
            enabled_providers=["openai"],
            provider_settings={"openai": ProviderSettings()},
        )
        ProviderRegistry(config).remove("openai")
        assert config.enabled_providers == []
        assert config.provider_settings == {}

    def test_empty_name_rejected(self, tmp_path: "Path") -> "None":
        with pytest.raises(ConfigError):
            ProviderRegistry(Config(home=tmp_path)).add("  ", ProviderSettings())
