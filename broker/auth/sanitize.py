"""
Return-destination sanitizing.

Every URL the broker redirects to passes through `resolve()`: relative paths are anchored
to a caller-supplied base origin, absolute URLs must use https (http only for local
development hosts) and land on a host the AllowedHostPolicy accepts. The result is either
a fully-qualified URL or an explicit rejection reason so callers pick their own fallback.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlsplit, urlunsplit

from broker.auth.hosts import AllowedHostPolicy, is_local_dev_host, normalize_host

logger = logging.getLogger(__name__)

MAX_DECODE_PASSES = 2
MAX_CALLBACK_UNWRAPS = 3
CALLBACK_PARAM = "callbackUrl"

TenantDomainCheck = Callable[[str], bool]


class RejectReason(str, Enum):
    EMPTY = "empty"
    INVALID_URL = "invalid_url"
    INSECURE_PROTOCOL = "insecure_protocol"
    HOST_NOT_ALLOWED = "host_not_allowed"


@dataclass(frozen=True)
class ReturnDestination:
    raw_input: str
    resolved_url: Optional[str]
    origin_host: str
    is_absolute: bool
    reason: Optional[RejectReason] = None

    @property
    def ok(self) -> bool:
        return self.resolved_url is not None

    def url_or(self, fallback: str) -> str:
        return self.resolved_url if self.resolved_url is not None else fallback


def safe_decode(value: str, max_passes: int = MAX_DECODE_PASSES) -> str:
    """
    Percent-decode at most `max_passes` times.

    Stops as soon as a pass changes nothing or the bytes are not valid UTF-8; in the
    latter case the last good value is kept.
    """
    decoded = value
    for _ in range(max_passes):
        try:
            nxt = unquote(decoded, errors="strict")
        except UnicodeDecodeError:
            break
        if nxt == decoded:
            break
        decoded = nxt
    return decoded


def has_unsafe_chars(value: str) -> bool:
    # Browsers normalize `\` to `/`, so `/\evil.com` would turn protocol-relative.
    if "\\" in value:
        return True
    return any(ord(c) < 0x20 or ord(c) == 0x7F for c in value)


def _reject(raw: str, reason: RejectReason, host: str = "", is_absolute: bool = False) -> ReturnDestination:
    return ReturnDestination(raw_input=raw, resolved_url=None, origin_host=host, is_absolute=is_absolute, reason=reason)


def _resolve_once(
    raw: str,
    base_origin: str,
    policy: AllowedHostPolicy,
    is_tenant_domain: Optional[TenantDomainCheck],
) -> ReturnDestination:
    value = safe_decode((raw or "").strip()).strip()
    if not value:
        return _reject(raw, RejectReason.EMPTY)
    if has_unsafe_chars(value):
        return _reject(raw, RejectReason.INVALID_URL)

    is_absolute = True
    if value.startswith("//"):
        return _reject(raw, RejectReason.INVALID_URL)
    if value.startswith("/"):
        is_absolute = False
        candidate = urljoin(base_origin.rstrip("/") + "/", value)
    else:
        candidate = value

    try:
        parts = urlsplit(candidate)
        host = normalize_host(parts.hostname)
        _ = parts.port  # raises ValueError for a malformed port
    except ValueError:
        return _reject(raw, RejectReason.INVALID_URL, is_absolute=is_absolute)

    scheme = (parts.scheme or "").lower()
    if scheme not in ("http", "https") or not host:
        return _reject(raw, RejectReason.INVALID_URL, host, is_absolute)
    if parts.username is not None or parts.password is not None:
        return _reject(raw, RejectReason.INVALID_URL, host, is_absolute)

    local = is_local_dev_host(host)
    if scheme != "https" and not local:
        return _reject(raw, RejectReason.INSECURE_PROTOCOL, host, is_absolute)

    allowed = policy.is_allowed(host)
    if not allowed and not local and is_tenant_domain is not None:
        allowed = bool(is_tenant_domain(host))
    if not allowed:
        return _reject(raw, RejectReason.HOST_NOT_ALLOWED, host, is_absolute)

    url = urlunsplit((scheme, parts.netloc.lower(), parts.path, parts.query, parts.fragment))
    return ReturnDestination(raw_input=raw, resolved_url=url, origin_host=host, is_absolute=is_absolute)


def _strip_param(url: str, name: str) -> str:
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != name]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def resolve(
    raw: Optional[str],
    base_origin: str,
    policy: AllowedHostPolicy,
    *,
    is_tenant_domain: Optional[TenantDomainCheck] = None,
) -> ReturnDestination:
    """
    Validate and normalize a candidate return destination.

    `is_tenant_domain` lets callers accept registered tenant custom domains (https only)
    on top of the static policy; it is only consulted for hosts the policy rejects.
    """
    raw = raw or ""
    result = _resolve_once(raw, base_origin, policy, is_tenant_domain)
    if not result.ok:
        logger.info("Rejected return destination (%s)", result.reason.value if result.reason else "unknown")
        return result

    # Repeated redirect hops leave `?callbackUrl=` wrappers behind; peel a bounded number.
    for _ in range(MAX_CALLBACK_UNWRAPS):
        url = result.resolved_url or ""
        parts = urlsplit(url)
        inner = [v for k, v in parse_qsl(parts.query, keep_blank_values=True) if k == CALLBACK_PARAM]
        if not inner:
            break
        nested = _resolve_once(inner[0], f"{parts.scheme}://{parts.netloc}", policy, is_tenant_domain)
        if not nested.ok:
            logger.info("Rejected nested callback destination (%s)", nested.reason.value if nested.reason else "unknown")
            return _reject(raw, nested.reason or RejectReason.INVALID_URL, nested.origin_host, nested.is_absolute)
        result = ReturnDestination(
            raw_input=raw,
            resolved_url=nested.resolved_url,
            origin_host=nested.origin_host,
            is_absolute=result.is_absolute,
        )
    else:
        url = result.resolved_url or ""
        if CALLBACK_PARAM in dict(parse_qsl(urlsplit(url).query, keep_blank_values=True)):
            result = ReturnDestination(
                raw_input=raw,
                resolved_url=_strip_param(url, CALLBACK_PARAM),
                origin_host=result.origin_host,
                is_absolute=result.is_absolute,
            )

    return result
