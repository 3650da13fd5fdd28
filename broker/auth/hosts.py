from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Tuple

from broker.auth.config import BrokerConfig

LOCAL_DEV_HOSTS = frozenset({"localhost", "127.0.0.1"})
LOCAL_DEV_SUFFIXES = (".localhost", ".local")


def normalize_host(host: Optional[str]) -> str:
    """Lowercase a hostname and drop a trailing root dot (`flexrz.com.`)."""
    return (host or "").strip().lower().rstrip(".")


def is_local_dev_host(host: str) -> bool:
    h = normalize_host(host)
    if not h:
        return False
    return h in LOCAL_DEV_HOSTS or h.endswith(LOCAL_DEV_SUFFIXES)


@dataclass(frozen=True)
class AllowedHostPolicy:
    """
    Closed set of hosts the broker may redirect to.

    A host is allowed when it is the apex, a subdomain of the apex, an exact allow-list
    entry, matches a `*.example.com` wildcard entry, or is a local-development host.
    Anything else is rejected.
    """

    apex_domain: str
    exact_hosts: FrozenSet[str] = frozenset()
    wildcard_suffixes: Tuple[str, ...] = ()  # stored as ".example.com"
    allow_local_dev: bool = True

    @classmethod
    def build(cls, apex_domain: str, entries: Iterable[str] = (), *, allow_local_dev: bool = True) -> "AllowedHostPolicy":
        exact = set()
        wildcards = []
        for raw in entries:
            entry = normalize_host(raw)
            if not entry:
                continue
            if entry.startswith("*."):
                suffix = entry[1:]
                # `*.` alone would match everything.
                if len(suffix) > 1:
                    wildcards.append(suffix)
            else:
                exact.add(entry)
        return cls(
            apex_domain=normalize_host(apex_domain),
            exact_hosts=frozenset(exact),
            wildcard_suffixes=tuple(wildcards),
            allow_local_dev=allow_local_dev,
        )

    @classmethod
    def from_config(cls, cfg: BrokerConfig) -> "AllowedHostPolicy":
        return cls.build(cfg.apex_domain, cfg.allowed_hosts, allow_local_dev=cfg.allow_local_dev)

    def shares_cookie_domain(self, host: str) -> bool:
        """True when the host receives the parent-domain session cookie."""
        h = normalize_host(host)
        if not h or not self.apex_domain:
            return False
        return h == self.apex_domain or h.endswith(f".{self.apex_domain}")

    def is_allowed(self, host: str) -> bool:
        h = normalize_host(host)
        if not h:
            return False
        if self.shares_cookie_domain(h):
            return True
        if h in self.exact_hosts:
            return True
        if any(h.endswith(suffix) for suffix in self.wildcard_suffixes):
            return True
        if self.allow_local_dev and is_local_dev_host(h):
            return True
        return False
