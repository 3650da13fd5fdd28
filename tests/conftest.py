"""
Pytest config.

Local imports like `import broker` rely on the repo root being on sys.path. When invoking a
global `pytest` entrypoint that doesn't happen reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from broker.auth.config import BrokerConfig  # noqa: E402
from broker.auth.tenants import TenantDomainResolver  # noqa: E402

SESSION_SECRET = "test-session-secret-for-testing-purposes-only"
HANDOFF_SECRET = "test-handoff-secret-for-testing-purposes-only"


class StaticTenants(TenantDomainResolver):
    """Tenant resolver stub: a fixed host -> slug map, no network."""

    def __init__(self, domains: Optional[Dict[str, str]] = None):
        super().__init__("https://backend.invalid")
        self.domains = dict(domains or {})
        self.lookups = []

    def resolve_slug(self, hostname: str) -> Optional[str]:
        self.lookups.append(hostname)
        return self.domains.get((hostname or "").lower())


@pytest.fixture
def make_cfg() -> Callable[..., BrokerConfig]:
    base = BrokerConfig(
        apex_domain="flexrz.com",
        auth_origin="https://auth.flexrz.com",
        default_app_host="app.flexrz.com",
        allowed_hosts=("partner.example.org", "*.trusted.example"),
        allow_local_dev=True,
        production=True,
        cookie_prefix="next-auth",
        last_tenant_cookie="flexrz_last_tenant",
        pending_cookie="flexrz_pending_return",
        pending_ttl_seconds=3600,
        session_secret=SESSION_SECRET,
        session_ttl_seconds=3600,
        provider_signin_path="/api/auth/signin/google",
        handoff_secret=HANDOFF_SECRET,
        handoff_ttl_seconds=120,
        tenant_resolver_url=None,
        tenant_resolver_timeout_seconds=0.5,
        tenant_resolver_cache_seconds=60,
    )

    def _make(**overrides) -> BrokerConfig:
        return replace(base, **overrides)

    return _make


@pytest.fixture
def cfg(make_cfg) -> BrokerConfig:
    return make_cfg()


@pytest.fixture
def static_tenants() -> Callable[..., StaticTenants]:
    return StaticTenants
