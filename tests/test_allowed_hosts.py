from __future__ import annotations

import pytest

from broker.auth.hosts import AllowedHostPolicy, is_local_dev_host, normalize_host

POLICY = AllowedHostPolicy.build("flexrz.com", ["partner.example.org", "*.trusted.example", "  ", "*."])


@pytest.mark.parametrize(
    "host,expected",
    [
        # apex + subdomains
        ("flexrz.com", True),
        ("app.flexrz.com", True),
        ("owner.flexrz.com", True),
        ("deep.nested.flexrz.com", True),
        ("FLEXRZ.COM", True),
        ("app.flexrz.com.", True),
        ("evilflexrz.com", False),
        ("flexrz.com.evil.net", False),
        ("flexrz.co", False),
        # exact allow-list entries
        ("partner.example.org", True),
        ("www.partner.example.org", False),
        ("example.org", False),
        # wildcard entries
        ("a.trusted.example", True),
        ("a.b.trusted.example", True),
        ("trusted.example", False),
        ("untrusted.example", False),
        # local development
        ("localhost", True),
        ("127.0.0.1", True),
        ("tenant.localhost", True),
        ("devbox.local", True),
        ("localhost.evil.com", False),
        ("127.0.0.2", False),
        # garbage
        ("", False),
        ("evil.example.com", False),
    ],
)
def test_is_allowed_table(host: str, expected: bool) -> None:
    assert POLICY.is_allowed(host) is expected


def test_local_dev_hosts_can_be_disabled() -> None:
    strict = AllowedHostPolicy.build("flexrz.com", [], allow_local_dev=False)
    assert strict.is_allowed("localhost") is False
    assert strict.is_allowed("app.flexrz.com") is True


def test_bare_wildcard_is_ignored() -> None:
    # `*.` must never turn into "allow everything".
    assert POLICY.wildcard_suffixes == (".trusted.example",)
    assert POLICY.is_allowed("anything.com") is False


def test_shares_cookie_domain_only_for_apex_family() -> None:
    assert POLICY.shares_cookie_domain("flexrz.com") is True
    assert POLICY.shares_cookie_domain("app.flexrz.com") is True
    assert POLICY.shares_cookie_domain("partner.example.org") is False
    assert POLICY.shares_cookie_domain("a.trusted.example") is False
    assert POLICY.shares_cookie_domain("localhost") is False


def test_from_config_uses_configured_entries(cfg) -> None:
    policy = AllowedHostPolicy.from_config(cfg)
    assert policy.apex_domain == "flexrz.com"
    assert "partner.example.org" in policy.exact_hosts
    assert policy.is_allowed("x.trusted.example")


def test_helpers() -> None:
    assert normalize_host(" App.Flexrz.com. ") == "app.flexrz.com"
    assert normalize_host(None) == ""
    assert is_local_dev_host("LOCALHOST")
    assert not is_local_dev_host("")
