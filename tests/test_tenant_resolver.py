from __future__ import annotations

from unittest.mock import MagicMock

import requests

from broker.auth.tenants import RESOLVE_PATH, TenantDomainResolver


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _response(status: int, body=None, bad_json: bool = False) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    if bad_json:
        r.json.side_effect = ValueError("not json")
    else:
        r.json.return_value = body
    return r


def _resolver(http: MagicMock, clock: FakeClock = None, **kwargs) -> TenantDomainResolver:
    return TenantDomainResolver(
        "https://backend.example/",
        timeout_seconds=0.5,
        cache_seconds=60,
        clock=clock or FakeClock(),
        session=http,
        **kwargs,
    )


def test_disabled_without_base_url() -> None:
    http = MagicMock()
    resolver = TenantDomainResolver(None, session=http)
    assert resolver.enabled is False
    assert resolver.resolve_slug("book.birdie-golf.com") is None
    http.get.assert_not_called()


def test_resolves_slug_with_timeout() -> None:
    http = MagicMock()
    http.get.return_value = _response(200, {"slug": "birdie-golf"})
    resolver = _resolver(http)

    assert resolver.resolve_slug("Book.Birdie-Golf.com.") == "birdie-golf"
    assert resolver.is_registered("book.birdie-golf.com") is True

    http.get.assert_called_once_with(
        f"https://backend.example{RESOLVE_PATH}",
        params={"domain": "book.birdie-golf.com"},
        timeout=0.5,
    )


def test_accepts_tenant_slug_field() -> None:
    http = MagicMock()
    http.get.return_value = _response(200, {"tenantSlug": "pad-club"})
    assert _resolver(http).resolve_slug("pad.example") == "pad-club"


def test_answers_are_cached_until_expiry() -> None:
    clock = FakeClock()
    http = MagicMock()
    http.get.return_value = _response(200, {"slug": "birdie-golf"})
    resolver = _resolver(http, clock)

    resolver.resolve_slug("book.birdie-golf.com")
    clock.now += 59
    resolver.resolve_slug("book.birdie-golf.com")
    assert http.get.call_count == 1

    clock.now += 2
    resolver.resolve_slug("book.birdie-golf.com")
    assert http.get.call_count == 2


def test_not_found_is_a_cached_negative() -> None:
    http = MagicMock()
    http.get.return_value = _response(404, {"error": "not found"})
    resolver = _resolver(http)

    assert resolver.is_registered("unknown.example") is False
    assert resolver.is_registered("unknown.example") is False
    assert http.get.call_count == 1


def test_unexpected_body_fails_closed() -> None:
    http = MagicMock()
    http.get.side_effect = [_response(200, ["birdie-golf"]), _response(200, bad_json=True), _response(200, {"slug": ""})]
    resolver = _resolver(http)
    assert resolver.resolve_slug("a.example") is None
    assert resolver.resolve_slug("b.example") is None
    assert resolver.resolve_slug("c.example") is None


def test_timeout_fails_closed_and_is_not_cached() -> None:
    http = MagicMock()
    http.get.side_effect = [requests.Timeout("slow"), _response(200, {"slug": "birdie-golf"})]
    resolver = _resolver(http)

    assert resolver.is_registered("book.birdie-golf.com") is False
    assert resolver.is_registered("book.birdie-golf.com") is True
    assert http.get.call_count == 2


def test_connection_error_fails_closed() -> None:
    http = MagicMock()
    http.get.side_effect = requests.ConnectionError("refused")
    assert _resolver(http).resolve_slug("book.birdie-golf.com") is None


def test_server_error_fails_closed_and_is_not_cached() -> None:
    http = MagicMock()
    http.get.side_effect = [_response(503), _response(200, {"slug": "birdie-golf"})]
    resolver = _resolver(http)

    assert resolver.resolve_slug("book.birdie-golf.com") is None
    assert resolver.resolve_slug("book.birdie-golf.com") == "birdie-golf"


def test_empty_host_is_never_looked_up() -> None:
    http = MagicMock()
    assert _resolver(http).resolve_slug("") is None
    http.get.assert_not_called()


def test_from_config(make_cfg) -> None:
    cfg = make_cfg(tenant_resolver_url="https://backend.example", tenant_resolver_timeout_seconds=0.25)
    resolver = TenantDomainResolver.from_config(cfg)
    assert resolver.enabled is True
    assert TenantDomainResolver.from_config(make_cfg()).enabled is False


def test_expired_entries_are_dropped_as_new_hosts_arrive() -> None:
    http = MagicMock()
    http.get.return_value = _response(404)
    clock = FakeClock()
    resolver = _resolver(http, clock)

    for i in range(5000):
        resolver.resolve_slug(f"shop{i}.example.com")
        clock.now += 120

    assert len(resolver._cache) <= 1


def test_cache_size_is_capped_oldest_first() -> None:
    http = MagicMock()
    http.get.return_value = _response(200, {"slug": "birdie-golf"})
    resolver = _resolver(http, max_entries=100)

    for i in range(500):
        resolver.resolve_slug(f"shop{i}.example.com")
    assert len(resolver._cache) <= 100
    assert http.get.call_count == 500

    resolver.resolve_slug("shop499.example.com")
    assert http.get.call_count == 500
    resolver.resolve_slug("shop0.example.com")
    assert http.get.call_count == 501
