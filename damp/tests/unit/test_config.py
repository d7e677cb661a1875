"""Unit tests for orchestrator settings."""

import os

import pytest
from pydantic import ValidationError

from damp.core.config import Settings, get_settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run in a scratch directory with no DAMP_ variables set."""
    for var in list(os.environ):
        if var.startswith("DAMP_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield monkeypatch


class TestSettingsDefaults:
    """Test that Settings has the expected defaults."""

    def test_naming_defaults(self, clean_env):
        settings = Settings(_env_file=None)
        assert settings.network_name == "damp-network"
        assert settings.service_container_prefix == "damp-"
        assert settings.project_volume_prefix == "damp_project_"
        assert settings.project_domain_suffix == ".local"

    def test_proxy_defaults(self, clean_env):
        settings = Settings(_env_file=None)
        assert settings.proxy_container_name == "damp-caddy"
        assert settings.proxy_config_path == "/etc/caddy/Caddyfile"
        assert settings.proxy_upstream_port == 8080

    def test_port_defaults(self, clean_env):
        settings = Settings(_env_file=None)
        assert settings.port_pool is None
        assert settings.serialize_port_allocation is True
        assert settings.port_scan_start == 8443
        assert settings.port_scan_end == 8462

    def test_event_defaults(self, clean_env):
        settings = Settings(_env_file=None)
        assert settings.event_debounce_seconds == pytest.approx(0.3)
        assert settings.engine_stats_timeout == pytest.approx(2.0)


class TestSettingsEnvironment:
    """Test environment variable overrides."""

    def test_prefixed_variables(self, clean_env):
        clean_env.setenv("DAMP_NETWORK_NAME", "other-net")
        clean_env.setenv("DAMP_PORT_POOL_START", "20000")
        clean_env.setenv("DAMP_PORT_POOL_END", "20010")
        settings = Settings(_env_file=None)
        assert settings.network_name == "other-net"
        assert settings.port_pool == range(20000, 20011)

    def test_hosts_helper_command_from_json(self, clean_env):
        clean_env.setenv("DAMP_HOSTS_HELPER_COMMAND", '["sudo", "damp-hosts"]')
        assert Settings(_env_file=None).hosts_helper_command == ["sudo", "damp-hosts"]

    def test_get_settings_is_cached(self, clean_env):
        assert get_settings() is get_settings()


class TestSettingsValidation:
    def test_log_level_normalized(self, clean_env):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self, clean_env):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_half_configured_pool_rejected(self, clean_env):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, port_pool_start=20000)

    def test_inverted_pool_rejected(self, clean_env):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, port_pool_start=20010, port_pool_end=20000)

    def test_scan_range_past_max_rejected(self, clean_env):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, port_scan_start=65530, port_scan_range=20)

    def test_log_directory_created(self, clean_env, tmp_path):
        log_path = tmp_path / "nested" / "logs" / "damp.log"
        Settings(_env_file=None, log_file_path=str(log_path))
        assert log_path.parent.is_dir()
