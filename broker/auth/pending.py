"""
Cookies that carry the intended post-login destination across the OAuth round trip.

Two families are written:

- the session provider's own callback-url cookie, under both its secure-prefixed and
  legacy names, so whichever name the provider reads points at the pinned destination;
- the broker-owned pending-return cookie: one signed blob holding an explicit state
  (`none` -> `pending` -> `consumed`), which survives the provider rewriting or clearing
  its own callback cookie mid-flight.

Every write overwrites; a stale value from an earlier sign-in must never win.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import List, Optional
from urllib.parse import quote

from fastapi import Request, Response
from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from broker.auth.config import BrokerConfig

logger = logging.getLogger(__name__)

PENDING_SALT = "broker-pending-return-v1"
LAST_TENANT_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")
# URL characters that survive a Cookie header unquoted; everything else is percent-encoded.
_COOKIE_URL_SAFE = "!#$%&'()*+/:=?@[]~"


class PendingState(str, Enum):
    NO_PENDING_RETURN = "none"
    PENDING_RETURN = "pending"
    CONSUMED = "consumed"


@dataclass(frozen=True)
class PendingReturn:
    state: PendingState
    return_to: Optional[str] = None
    callback_url: Optional[str] = None
    from_host: Optional[str] = None

    @classmethod
    def none(cls) -> "PendingReturn":
        return cls(state=PendingState.NO_PENDING_RETURN)

    @classmethod
    def pending(cls, *, return_to: Optional[str], callback_url: Optional[str], from_host: Optional[str]) -> "PendingReturn":
        return cls(state=PendingState.PENDING_RETURN, return_to=return_to, callback_url=callback_url, from_host=from_host)

    @classmethod
    def consumed(cls) -> "PendingReturn":
        return cls(state=PendingState.CONSUMED)

    @property
    def is_pending(self) -> bool:
        return self.state == PendingState.PENDING_RETURN


def callback_cookie_names(cfg: BrokerConfig) -> List[str]:
    return [f"__Secure-{cfg.cookie_prefix}.callback-url", f"{cfg.cookie_prefix}.callback-url"]


def _common_kwargs(cfg: BrokerConfig) -> dict:
    return {
        "samesite": "lax",
        "path": "/",
        "domain": cfg.cookie_domain,
    }


def cookie_safe_url(url: str) -> str:
    """Percent-encode `;`, `,`, quotes, whitespace and non-ASCII so the URL is one cookie value."""
    return quote(url, safe=_COOKIE_URL_SAFE)


def pin_callback_url(response: Response, cfg: BrokerConfig, url: str) -> None:
    """Write `url` into both provider callback-url cookie names."""
    value = cookie_safe_url(url)
    for name in callback_cookie_names(cfg):
        response.set_cookie(
            key=name,
            value=value,
            httponly=False,
            # Browsers drop `__Secure-` cookies that lack the Secure attribute.
            secure=cfg.cookie_secure or name.startswith("__Secure-"),
            **_common_kwargs(cfg),
        )


def read_callback_url(request: Request, cfg: BrokerConfig) -> Optional[str]:
    for name in callback_cookie_names(cfg):
        value = (request.cookies.get(name) or "").strip()
        if value:
            return value
    return None


def _serializer(cfg: BrokerConfig) -> Optional[URLSafeTimedSerializer]:
    secret = cfg.session_secret or cfg.handoff_secret
    if not secret:
        return None
    return URLSafeTimedSerializer(secret_key=secret, salt=PENDING_SALT)


def encode_pending(cfg: BrokerConfig, pending: PendingReturn) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    payload = asdict(pending)
    payload["state"] = pending.state.value
    return s.dumps(json.dumps(payload, separators=(",", ":"), sort_keys=True))


def decode_pending(cfg: BrokerConfig, value: Optional[str]) -> PendingReturn:
    if not value:
        return PendingReturn.none()
    s = _serializer(cfg)
    if s is None:
        return PendingReturn.none()
    try:
        data = json.loads(s.loads(value, max_age=cfg.pending_ttl_seconds))
        if not isinstance(data, dict):
            return PendingReturn.none()
        state = PendingState(str(data.get("state") or ""))
    except (BadSignature, BadTimeSignature, ValueError):
        return PendingReturn.none()
    if state != PendingState.PENDING_RETURN:
        return PendingReturn(state=state)
    return PendingReturn.pending(
        return_to=str(data.get("return_to") or "") or None,
        callback_url=str(data.get("callback_url") or "") or None,
        from_host=str(data.get("from_host") or "") or None,
    )


def read_pending(request: Request, cfg: BrokerConfig) -> PendingReturn:
    return decode_pending(cfg, request.cookies.get(cfg.pending_cookie))


def write_pending(response: Response, cfg: BrokerConfig, pending: PendingReturn) -> bool:
    value = encode_pending(cfg, pending)
    if value is None:
        logger.warning("Pending-return cookie not written: no signing secret configured")
        return False
    response.set_cookie(
        key=cfg.pending_cookie,
        value=value,
        max_age=cfg.pending_ttl_seconds,
        httponly=True,
        secure=cfg.cookie_secure,
        **_common_kwargs(cfg),
    )
    return True


def read_last_tenant(request: Request, cfg: BrokerConfig) -> Optional[str]:
    """Slug of the last tenant the user visited on the app host, if well-formed."""
    slug = (request.cookies.get(cfg.last_tenant_cookie) or "").strip().lower()
    if not slug or not LAST_TENANT_SLUG_RE.match(slug):
        return None
    return slug
