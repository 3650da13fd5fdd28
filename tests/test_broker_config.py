from __future__ import annotations

import pytest

from broker.auth.config import clamp_handoff_ttl, load_broker_config

_ENV = [
    "BROKER_APEX_DOMAIN",
    "BROKER_AUTH_ORIGIN",
    "BROKER_APP_HOST",
    "BROKER_ALLOWED_HOSTS",
    "BROKER_ALLOW_LOCAL_DEV",
    "BROKER_PRODUCTION",
    "BROKER_COOKIE_PREFIX",
    "AUTH_SESSION_SECRET",
    "AUTH_SESSION_TTL_SECONDS",
    "BROKER_HANDOFF_SECRET",
    "BROKER_HANDOFF_TTL_SECONDS",
    "BROKER_TENANT_RESOLVER_URL",
    "BROKER_TENANT_RESOLVER_TIMEOUT_SECONDS",
    "BROKER_TENANT_RESOLVER_CACHE_SECONDS",
    "BROKER_PROVIDER_SIGNIN_PATH",
    "BROKER_LAST_TENANT_COOKIE",
    "BROKER_PENDING_COOKIE",
    "BROKER_PENDING_TTL_SECONDS",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    load_broker_config.cache_clear()
    yield
    load_broker_config.cache_clear()


def test_defaults() -> None:
    cfg = load_broker_config()
    assert cfg.apex_domain == "flexrz.com"
    assert cfg.auth_origin == "https://auth.flexrz.com"
    assert cfg.auth_host == "auth.flexrz.com"
    assert cfg.default_app_host == "app.flexrz.com"
    assert cfg.default_app_origin == "https://app.flexrz.com"
    assert cfg.fallback_url == "https://flexrz.com"
    assert cfg.allowed_hosts == ()
    assert cfg.production is True
    assert cfg.cookie_secure is True
    assert cfg.cookie_domain == ".flexrz.com"
    assert cfg.session_secret is None
    assert cfg.handoff_secret is None
    assert cfg.handoff_ttl_seconds == 120
    assert cfg.tenant_resolver_url is None
    assert cfg.tenant_resolver_timeout_seconds == 0.75
    assert cfg.tenant_resolver_cache_seconds == 60
    assert cfg.provider_signin_path == "/api/auth/signin/google"
    assert cfg.last_tenant_cookie == "flexrz_last_tenant"


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("BROKER_APEX_DOMAIN", "Example.COM.")
    monkeypatch.setenv("BROKER_ALLOWED_HOSTS", " Partner.example.org , *.trusted.example,, ")
    monkeypatch.setenv("AUTH_SESSION_SECRET", "  s3cret  ")
    monkeypatch.setenv("BROKER_HANDOFF_TTL_SECONDS", "9999")
    monkeypatch.setenv("BROKER_TENANT_RESOLVER_URL", "https://api.example.com/")
    monkeypatch.setenv("BROKER_TENANT_RESOLVER_TIMEOUT_SECONDS", "0.4")

    cfg = load_broker_config()
    assert cfg.apex_domain == "example.com"
    assert cfg.auth_origin == "https://auth.example.com"
    assert cfg.default_app_host == "app.example.com"
    assert cfg.allowed_hosts == ("partner.example.org", "*.trusted.example")
    assert cfg.session_secret == "s3cret"
    assert cfg.handoff_ttl_seconds == 300
    assert cfg.tenant_resolver_url == "https://api.example.com"
    assert cfg.tenant_resolver_timeout_seconds == 0.4


def test_local_development(monkeypatch) -> None:
    monkeypatch.setenv("BROKER_APEX_DOMAIN", "localhost")
    monkeypatch.setenv("BROKER_AUTH_ORIGIN", "http://localhost:8080/")
    cfg = load_broker_config()
    assert cfg.auth_origin == "http://localhost:8080"
    assert cfg.production is False
    assert cfg.cookie_domain is None


@pytest.mark.parametrize("raw", ["0", "-1", "5", "abc"])
def test_resolver_timeout_stays_bounded(monkeypatch, raw: str) -> None:
    monkeypatch.setenv("BROKER_TENANT_RESOLVER_TIMEOUT_SECONDS", raw)
    assert load_broker_config().tenant_resolver_timeout_seconds == 0.75


def test_invalid_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_SESSION_TTL_SECONDS", "forever")
    monkeypatch.setenv("BROKER_PENDING_TTL_SECONDS", "1")
    cfg = load_broker_config()
    assert cfg.session_ttl_seconds == 30 * 24 * 3600
    assert cfg.pending_ttl_seconds == 60


def test_config_is_cached() -> None:
    assert load_broker_config() is load_broker_config()


@pytest.mark.parametrize("value,expected", [(0, 60), (59, 60), (60, 60), (180, 180), (300, 300), (301, 300)])
def test_clamp_handoff_ttl(value: int, expected: int) -> None:
    assert clamp_handoff_ttl(value) == expected
