from __future__ import annotations

import json
from dataclasses import asdict
from typing import List, Optional

from fastapi import Request
from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from broker.auth.config import BrokerConfig
from broker.auth.models import IdentityClaims

SESSION_SALT = "broker-session-v1"


def session_cookie_names(cfg: BrokerConfig) -> List[str]:
    """Secure-prefixed name first (production), legacy name second (plain http dev)."""
    return [f"__Secure-{cfg.cookie_prefix}.session-token", f"{cfg.cookie_prefix}.session-token"]


def session_cookie_name(cfg: BrokerConfig) -> str:
    names = session_cookie_names(cfg)
    return names[0] if cfg.cookie_secure else names[1]


def _serializer(cfg: BrokerConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session(cfg: BrokerConfig, claims: IdentityClaims) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    raw = json.dumps(asdict(claims), separators=(",", ":"), sort_keys=True)
    return s.dumps(raw)


def _opt_str(value) -> Optional[str]:
    return str(value) if value else None


def decode_session(cfg: BrokerConfig, value: str | None) -> Optional[IdentityClaims]:
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        raw = s.loads(value, max_age=cfg.session_ttl_seconds)
        data = json.loads(raw)
        if not isinstance(data, dict):
            return None
        subject = str(data.get("subject") or "").strip()
        if not subject:
            return None
        expires = data.get("access_token_expires_at_ms")
        return IdentityClaims(
            subject=subject,
            email=_opt_str(data.get("email")),
            name=_opt_str(data.get("name")),
            picture=_opt_str(data.get("picture")),
            provider=str(data.get("provider") or "").strip() or "google",
            provider_id_token=_opt_str(data.get("provider_id_token")),
            access_token=_opt_str(data.get("access_token")),
            refresh_token=_opt_str(data.get("refresh_token")),
            access_token_expires_at_ms=int(expires) if isinstance(expires, (int, float)) else None,
        )
    except (BadSignature, BadTimeSignature, ValueError):
        return None


class SessionProvider:
    """Reads the identity of the current request from the provider's shared session cookie."""

    def __init__(self, cfg: BrokerConfig):
        self._cfg = cfg

    def read_identity(self, request: Request) -> Optional[IdentityClaims]:
        for name in session_cookie_names(self._cfg):
            claims = decode_session(self._cfg, request.cookies.get(name))
            if claims is not None:
                return claims
        return None


def session_cookie_kwargs(cfg: BrokerConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
        "domain": cfg.cookie_domain,
    }


def clear_session_cookie_kwargs(cfg: BrokerConfig) -> List[dict]:
    """Expire both cookie names so a stale legacy cookie cannot keep the user signed in."""
    return [
        {
            "key": name,
            "value": "",
            "max_age": 0,
            "httponly": True,
            "secure": cfg.cookie_secure or name.startswith("__Secure-"),
            "samesite": "lax",
            "path": "/",
            "domain": cfg.cookie_domain,
        }
        for name in session_cookie_names(cfg)
    ]
