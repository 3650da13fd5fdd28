from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Tuple

import requests

from broker.auth.config import BrokerConfig
from broker.auth.hosts import normalize_host

logger = logging.getLogger(__name__)

RESOLVE_PATH = "/api/tenant-domains/_public/resolve"
MAX_CACHE_ENTRIES = 1024


class TenantDomainResolver:
    """
    Client for the backend lookup that maps a custom hostname to a tenant.

    Fails closed: no backend configured, timeouts, transport errors, non-2xx answers and
    unexpected bodies all mean "not a registered tenant domain". Definitive answers are
    cached briefly per host in a bounded map; transport failures are not.
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        timeout_seconds: float = 0.75,
        cache_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
        session: Optional[requests.Session] = None,
        max_entries: int = MAX_CACHE_ENTRIES,
    ):
        self._base_url = (base_url or "").strip().rstrip("/")
        self._timeout = timeout_seconds
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._http = session or requests.Session()
        self._max_entries = max(1, max_entries)
        self._cache: Dict[str, Tuple[float, Optional[str]]] = {}

    @classmethod
    def from_config(cls, cfg: BrokerConfig) -> "TenantDomainResolver":
        return cls(
            cfg.tenant_resolver_url,
            timeout_seconds=cfg.tenant_resolver_timeout_seconds,
            cache_seconds=cfg.tenant_resolver_cache_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    def resolve_slug(self, hostname: str) -> Optional[str]:
        host = normalize_host(hostname)
        if not host or not self._base_url:
            return None

        now = self._clock()
        cached = self._cache.get(host)
        if cached is not None and now - cached[0] < self._cache_seconds:
            return cached[1]

        try:
            r = self._http.get(f"{self._base_url}{RESOLVE_PATH}", params={"domain": host}, timeout=self._timeout)
        except requests.RequestException as e:
            logger.warning("Tenant domain lookup failed for %s: %s", host, type(e).__name__)
            return None

        slug: Optional[str] = None
        if r.status_code < 400:
            try:
                data = r.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                slug = str(data.get("slug") or data.get("tenantSlug") or "").strip() or None
        elif r.status_code >= 500:
            logger.warning("Tenant domain lookup failed for %s (status=%d)", host, r.status_code)
            return None

        self._remember(host, now, slug)
        return slug

    def _remember(self, host: str, now: float, slug: Optional[str]) -> None:
        # Clean expired entries, then evict oldest-first past the size cap.
        self._cache = {h: e for h, e in self._cache.items() if h != host and now - e[0] < self._cache_seconds}
        while len(self._cache) >= self._max_entries:
            self._cache.pop(next(iter(self._cache)))
        self._cache[host] = (now, slug)

    def is_registered(self, hostname: str) -> bool:
        return self.resolve_slug(hostname) is not None
