"""
Short-lived signed assertions that carry identity to cookie-isolated tenant domains.

The token is a compact HS256 JWT (`header.payload.signature`) signed with a secret shared
only with the receiving domain's backend. It travels in the URL fragment, so it is never
sent to servers, proxies or access logs. Receivers must call `verify()` (or an equivalent)
with their own origin; the `dest` claim binds each assertion to exactly one origin.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import jwt  # PyJWT

from broker.auth.config import clamp_handoff_ttl
from broker.auth.models import IdentityClaims

HANDOFF_AUDIENCE = "flexrz-cross-domain-handoff"
HANDOFF_ALGORITHM = "HS256"
HANDOFF_FRAGMENT_KEY = "handoff"
DEFAULT_TTL_SECONDS = 120

_REQUIRED_CLAIMS = ["iss", "aud", "iat", "exp", "dest", "sub"]


class HandoffError(ValueError):
    """Raised when an assertion cannot be minted or does not verify."""


@dataclass(frozen=True)
class HandoffAssertion:
    iss: str
    aud: str
    iat: int
    exp: int
    dest: str
    sub: str
    email: Optional[str] = None
    gid: Optional[str] = None


def origin_of(url: str) -> str:
    """`https://Example.com:8443/path` -> `https://example.com:8443`."""
    try:
        parts = urlsplit((url or "").strip())
    except ValueError as e:
        raise HandoffError("Invalid destination URL") from e
    if not parts.scheme or not parts.netloc:
        raise HandoffError("Destination must be an absolute URL")
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def sign(
    claims: IdentityClaims,
    destination_origin: str,
    secret: Optional[str],
    *,
    issuer: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    if not secret:
        raise HandoffError("Handoff signing secret is not configured")
    if not claims.subject:
        raise HandoffError("Identity has no subject")

    iat = int(now if now is not None else time.time())
    payload: Dict[str, Any] = {
        "iss": issuer,
        "aud": HANDOFF_AUDIENCE,
        "iat": iat,
        "exp": iat + clamp_handoff_ttl(ttl_seconds),
        "dest": origin_of(destination_origin),
        "sub": claims.subject,
        "email": claims.email,
        # Provider ID token lets the receiver's backend verify with Google directly.
        # Refresh/access tokens never leave the broker.
        "gid": claims.provider_id_token,
    }
    try:
        return jwt.encode(payload, secret, algorithm=HANDOFF_ALGORITHM, headers={"typ": "JWT"})
    except (TypeError, ValueError, jwt.PyJWTError) as e:
        raise HandoffError(f"Failed to sign handoff assertion ({type(e).__name__})") from e


def verify(
    token: str,
    secret: Optional[str],
    expected_origin: str,
    *,
    now: Optional[float] = None,
) -> HandoffAssertion:
    """
    Verify a handoff assertion for the receiving origin.

    Rejects malformed structure, a bad signature, a foreign audience, a `dest` other than
    `expected_origin`, and expired tokens.
    """
    if not secret:
        raise HandoffError("Handoff signing secret is not configured")
    try:
        data = jwt.decode(
            token,
            secret,
            algorithms=[HANDOFF_ALGORITHM],
            audience=HANDOFF_AUDIENCE,
            # Time checks below use `now` so callers and tests control the clock.
            options={"require": _REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False, "verify_nbf": False},
        )
    except jwt.PyJWTError as e:
        raise HandoffError(f"Invalid handoff assertion ({type(e).__name__})") from e
    if not isinstance(data, dict):
        raise HandoffError("Invalid handoff payload")

    current = int(now if now is not None else time.time())
    try:
        iat = int(data["iat"])
        exp = int(data["exp"])
    except (TypeError, ValueError) as e:
        raise HandoffError("Invalid handoff timestamps") from e
    if current >= exp:
        raise HandoffError("Handoff assertion expired")

    if str(data.get("dest") or "") != origin_of(expected_origin):
        raise HandoffError("Handoff assertion issued for a different destination")

    return HandoffAssertion(
        iss=str(data.get("iss") or ""),
        aud=HANDOFF_AUDIENCE,
        iat=iat,
        exp=exp,
        dest=str(data["dest"]),
        sub=str(data.get("sub") or ""),
        email=str(data["email"]) if data.get("email") else None,
        gid=str(data["gid"]) if data.get("gid") else None,
    )


def attach_to_fragment(url: str, token: str) -> str:
    """Replace the fragment of `url` with `handoff=<token>` (never the query string)."""
    base = url.split("#", 1)[0]
    return f"{base}#{HANDOFF_FRAGMENT_KEY}={token}"
