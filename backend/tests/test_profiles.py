"""Tests for sandbox/profiles.py and config.py -- deployment profiles and settings."""

import pytest

from config import Settings
from sandbox.profiles import BASIC, IFRAME, PRODUCTION, PROFILES, NetworkMode, resolve_profile


class TestBuiltinProfiles:
    def test_registry(self) -> None:
        assert set(PROFILES) == {"basic", "production", "iframe"}

    def test_basic_uses_port_mapping(self) -> None:
        assert BASIC.network_mode == NetworkMode.PORT_MAPPING
        assert BASIC.uses_proxy is False

    def test_production_limits(self) -> None:
        assert PRODUCTION.uses_proxy is True
        assert PRODUCTION.memory_limit == "512m"
        assert PRODUCTION.cpu_limit == 0.5
        assert PRODUCTION.max_containers == 1000
        assert PRODUCTION.proxy_path_prefix == "/sandbox/"

    def test_iframe_limits(self) -> None:
        assert IFRAME.memory_limit == "256m"
        assert IFRAME.nano_cpus == 300_000_000
        assert IFRAME.max_containers == 500
        assert IFRAME.proxy_path_prefix == "/preview/"
        assert "'self'" in IFRAME.frame_ancestors

    def test_profiles_are_frozen(self) -> None:
        with pytest.raises(AttributeError):
            IFRAME.max_containers = 1  # type: ignore[misc]


class TestResolveProfile:
    def test_default_profile(self) -> None:
        assert resolve_profile(Settings(deployment_profile="iframe")) is IFRAME

    def test_name_is_case_insensitive(self) -> None:
        assert resolve_profile(Settings(deployment_profile=" Production ")) is PRODUCTION

    def test_overrides_applied(self) -> None:
        profile = resolve_profile(
            Settings(
                deployment_profile="basic",
                max_containers=3,
                idle_ttl_minutes=5,
                sweep_interval_minutes=1,
            )
        )
        assert profile.max_containers == 3
        assert profile.idle_ttl_seconds == 300
        assert profile.sweep_interval_seconds == 60
        assert profile.memory_limit == BASIC.memory_limit

    def test_unknown_profile(self) -> None:
        with pytest.raises(ValueError, match="Unknown deployment profile"):
            resolve_profile(Settings(deployment_profile="huge"))


class TestSettings:
    def test_cors_origins_comma_separated(self) -> None:
        settings = Settings(cors_origins="http://a.test, http://b.test")
        assert settings.cors_origins == ["http://a.test", "http://b.test"]

    def test_cors_origins_json(self) -> None:
        settings = Settings(cors_origins='["http://a.test"]')
        assert settings.cors_origins == ["http://a.test"]

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COMMAND_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("DEPLOYMENT_PROFILE", "BASIC")
        settings = Settings()
        assert settings.command_timeout_seconds == 5
        assert settings.deployment_profile == "basic"
