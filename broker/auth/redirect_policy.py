from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urljoin, urlsplit

from broker.auth.hosts import AllowedHostPolicy, normalize_host
from broker.auth.sanitize import has_unsafe_chars, resolve, safe_decode

logger = logging.getLogger(__name__)

AUTH_UI_PREFIXES = ("/auth/", "/api/auth/")


def _origin(scheme: str, netloc: str) -> str:
    return f"{scheme.lower()}://{netloc.lower()}"


def _is_auth_ui_path(path: str) -> bool:
    return path == "/auth" or path.startswith(AUTH_UI_PREFIXES)


def _normalized_path(auth_origin: str, path: str) -> str:
    return urlsplit(urljoin(auth_origin + "/", path or "/")).path


def _is_own_origin(value: str, auth_key: str) -> bool:
    """True when `value` as given (before any decoding) is relative or on the auth origin."""
    if value.startswith("/") and not value.startswith("//"):
        return True
    parts = urlsplit(value)
    return _origin(parts.scheme, parts.netloc) == auth_key


def decide(requested_url: Optional[str], auth_origin: str, policy: AllowedHostPolicy) -> str:
    """
    Decide where an auth lifecycle event (sign-in start, OAuth callback, sign-out) sends
    the browser.

    Always returns an absolute URL and never raises. Relative paths are anchored to the
    broker's own canonical origin, never to a host computed upstream.
    """
    auth_origin = auth_origin.rstrip("/")
    try:
        auth_parts = urlsplit(auth_origin)
        auth_key = _origin(auth_parts.scheme, auth_parts.netloc)

        raw = (requested_url or "").strip()
        value = safe_decode(raw).strip()
        if not value or has_unsafe_chars(value):
            return auth_origin

        relative = value.startswith("/") and not value.startswith("//")
        parts = urlsplit(value)
        same_origin = relative or _origin(parts.scheme, parts.netloc) == auth_key

        # Decoding is only for classification; same-origin targets keep the caller's
        # encoding so parameters nested in `to` or `returnTo` survive.
        keep = raw if same_origin and _is_own_origin(raw, auth_key) else value

        if same_origin:
            # `/return` and every other non-UI page on the broker itself.
            target = urljoin(auth_origin + "/", keep)
            if _is_auth_ui_path(parts.path) or _is_auth_ui_path(_normalized_path(auth_origin, parts.path)):
                logger.info("Refusing to redirect into the auth UI (%s)", parts.path)
                return auth_origin
            return target

        resolved = resolve(raw, auth_origin, policy)
        if resolved.ok and normalize_host(resolved.origin_host) != normalize_host(auth_parts.hostname):
            return resolved.url_or(auth_origin)
        return auth_origin
    except ValueError:
        logger.info("Unparseable redirect target; using auth origin")
        return auth_origin
