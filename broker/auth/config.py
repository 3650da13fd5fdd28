from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

HANDOFF_MIN_TTL_SECONDS = 60
HANDOFF_MAX_TTL_SECONDS = 300


@dataclass(frozen=True)
class BrokerConfig:
    # Domains
    apex_domain: str  # e.g. flexrz.com (apex + every subdomain share the session cookie)
    auth_origin: str  # e.g. https://auth.flexrz.com
    default_app_host: str  # e.g. app.flexrz.com
    allowed_hosts: Tuple[str, ...]  # exact hosts and `*.example.com` wildcards
    allow_local_dev: bool

    # Cookies
    production: bool
    cookie_prefix: str  # session provider cookie family, e.g. "next-auth"
    last_tenant_cookie: str
    pending_cookie: str
    pending_ttl_seconds: int

    # Session provider
    session_secret: Optional[str]
    session_ttl_seconds: int
    provider_signin_path: str

    # Cross-domain handoff
    handoff_secret: Optional[str]
    handoff_ttl_seconds: int

    # Tenant-domain resolver (optional)
    tenant_resolver_url: Optional[str]
    tenant_resolver_timeout_seconds: float
    tenant_resolver_cache_seconds: int

    @property
    def cookie_secure(self) -> bool:
        return self.production

    @property
    def cookie_domain(self) -> Optional[str]:
        """Parent-domain scope for every cookie the broker writes (None for local dev)."""
        if not self.production and self.apex_domain in ("localhost", "127.0.0.1"):
            return None
        return f".{self.apex_domain}"

    @property
    def fallback_url(self) -> str:
        return f"https://{self.apex_domain}"

    @property
    def default_app_origin(self) -> str:
        return f"https://{self.default_app_host}"

    @property
    def auth_host(self) -> str:
        return (urlsplit(self.auth_origin).hostname or "").lower()


def _parse_csv(value: str) -> List[str]:
    items = [x.strip().lower() for x in (value or "").split(",")]
    return [x for x in items if x]


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def clamp_handoff_ttl(seconds: int) -> int:
    return max(HANDOFF_MIN_TTL_SECONDS, min(HANDOFF_MAX_TTL_SECONDS, int(seconds)))


@lru_cache(maxsize=1)
def load_broker_config() -> BrokerConfig:
    """
    Load broker configuration from environment variables.

    Called once at process start; the result is passed explicitly to the app and every
    component, so validation code never reads the environment itself.
    """
    apex = (os.getenv("BROKER_APEX_DOMAIN", "") or "flexrz.com").strip().lower().strip(".")
    auth_origin = (os.getenv("BROKER_AUTH_ORIGIN", "") or f"https://auth.{apex}").strip().rstrip("/")
    app_host = (os.getenv("BROKER_APP_HOST", "") or f"app.{apex}").strip().lower()

    # Default: production (secure cookies) whenever the broker itself is served over https.
    production = _env_bool("BROKER_PRODUCTION", auth_origin.startswith("https://"))

    session_ttl = _env_int("AUTH_SESSION_TTL_SECONDS", 30 * 24 * 3600)  # 30d default
    if session_ttl <= 60:
        session_ttl = 60

    pending_ttl = _env_int("BROKER_PENDING_TTL_SECONDS", 3600)
    if pending_ttl <= 60:
        pending_ttl = 60

    timeout = _env_float("BROKER_TENANT_RESOLVER_TIMEOUT_SECONDS", 0.75)
    if timeout <= 0 or timeout > 1.0:
        timeout = 0.75

    return BrokerConfig(
        apex_domain=apex,
        auth_origin=auth_origin,
        default_app_host=app_host,
        allowed_hosts=tuple(_parse_csv(os.getenv("BROKER_ALLOWED_HOSTS", ""))),
        allow_local_dev=_env_bool("BROKER_ALLOW_LOCAL_DEV", True),
        production=production,
        cookie_prefix=(os.getenv("BROKER_COOKIE_PREFIX", "") or "next-auth").strip(),
        last_tenant_cookie=(os.getenv("BROKER_LAST_TENANT_COOKIE", "") or "flexrz_last_tenant").strip(),
        pending_cookie=(os.getenv("BROKER_PENDING_COOKIE", "") or "flexrz_pending_return").strip(),
        pending_ttl_seconds=pending_ttl,
        session_secret=(os.getenv("AUTH_SESSION_SECRET", "") or "").strip() or None,
        session_ttl_seconds=session_ttl,
        provider_signin_path=(os.getenv("BROKER_PROVIDER_SIGNIN_PATH", "") or "/api/auth/signin/google").strip(),
        handoff_secret=(os.getenv("BROKER_HANDOFF_SECRET", "") or "").strip() or None,
        handoff_ttl_seconds=clamp_handoff_ttl(_env_int("BROKER_HANDOFF_TTL_SECONDS", 120)),
        tenant_resolver_url=(os.getenv("BROKER_TENANT_RESOLVER_URL", "") or "").strip().rstrip("/") or None,
        tenant_resolver_timeout_seconds=timeout,
        tenant_resolver_cache_seconds=max(0, _env_int("BROKER_TENANT_RESOLVER_CACHE_SECONDS", 60)),
    )
