"""Tests for server config and component settings."""

from eksdeck.config.provider import (
    DEFAULT_CACHE_TTLS,
    CacheSettings,
    EnvConfigProvider,
)
from eksdeck.modules.config import ConfigModule


def test_config_module_defaults(monkeypatch):
    for name in ("API_HOST", "API_PORT", "LOG_LEVEL", "DEBUG", "STATIC_DIR"):
        monkeypatch.delenv(name, raising=False)

    config = ConfigModule()

    assert config.get("port") == 3000
    assert config.get("log_level") == "INFO"
    assert config.get("debug") is False
    assert config.get("static_dir") is None


def test_config_module_reads_environment(monkeypatch):
    monkeypatch.setenv("API_PORT", "8088")
    monkeypatch.setenv("DEBUG", "true")

    config = ConfigModule()

    assert config.get("port") == 8088
    assert config.get("debug") is True
    assert set(ConfigModule.get_config_schema()["required"]) == {"host", "port", "log_level"}


def test_provisioning_settings_from_environment(monkeypatch):
    monkeypatch.setenv("MONITORING_DELAY_SECONDS", "0")
    monkeypatch.setenv("RETRY_ATTEMPTS", "2")

    settings = EnvConfigProvider().get_provisioning_settings()

    assert settings.monitoring_delay == 0
    assert settings.retry_attempts == 2
    assert settings.retry_delay == 15
    assert settings.alb_policy_name == "AWSLoadBalancerControllerIAMPolicy"


def test_cache_ttl_override(monkeypatch):
    monkeypatch.setenv("CACHE_TTL_TREE_VIEW", "5")

    settings = EnvConfigProvider().get_cache_settings()

    assert settings.ttl_for("tree_view") == 5
    assert settings.ttl_for("namespaces") == DEFAULT_CACHE_TTLS["namespaces"]


def test_unknown_family_gets_listing_ttl():
    assert CacheSettings().ttl_for("cronjobs") == DEFAULT_CACHE_TTLS["pods"]


def test_port_forward_settings(monkeypatch):
    monkeypatch.setenv("GRAFANA_NAMESPACE", "observability")

    settings = EnvConfigProvider().get_port_forward_settings()

    assert settings.namespace == "observability"
    assert settings.local_port == 8080
    assert settings.ready_pattern == "Forwarding from"
