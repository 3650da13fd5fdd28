"""
HTTP surface of the auth broker.

Every endpoint here ends in exactly one redirect (or, for set-callback, a small JSON
body). Anything suspicious degrades to a fixed, safe fallback instead of an error page.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from broker.auth.config import BrokerConfig, load_broker_config
from broker.auth.handoff import HandoffError, attach_to_fragment, sign
from broker.auth.hosts import AllowedHostPolicy, is_local_dev_host, normalize_host
from broker.auth.models import IdentityClaims
from broker.auth.pending import (
    PendingReturn,
    callback_cookie_names,
    cookie_safe_url,
    pin_callback_url,
    read_callback_url,
    read_last_tenant,
    read_pending,
    write_pending,
)
from broker.auth.redirect_policy import decide
from broker.auth.sanitize import ReturnDestination, resolve
from broker.auth.session import SessionProvider, clear_session_cookie_kwargs
from broker.auth.tenants import TenantDomainResolver

logger = logging.getLogger(__name__)

_CALLBACK_HOP_PREFIX = "/api/auth/callback/"
_ROOTISH_APP_PATHS = ("", "/", "/tenant", "/tenant/")
_TOKEN_FRAGMENT_KEYS = ("id_token", "access_token", "handoff")


@dataclass
class BrokerContext:
    cfg: BrokerConfig
    policy: AllowedHostPolicy
    sessions: SessionProvider
    tenants: TenantDomainResolver


class SetCallbackResponse(BaseModel):
    ok: bool
    callbackUrl: str


def _ctx(request: Request) -> BrokerContext:
    return request.app.state.broker


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _same_origin(url: str, origin: str) -> bool:
    try:
        a = urlsplit(url)
        b = urlsplit(origin)
    except ValueError:
        return False
    return (a.scheme.lower(), a.netloc.lower()) == (b.scheme.lower(), b.netloc.lower())


def _origin_for_host(host: str) -> str:
    scheme = "http" if is_local_dev_host(host) else "https"
    return f"{scheme}://{host}"


def _host_hint(value: Optional[str]) -> str:
    """Accept either a bare host (`app.flexrz.com`) or a URL and return the hostname."""
    v = (value or "").strip()
    if not v:
        return ""
    if "://" in v:
        try:
            return normalize_host(urlsplit(v).hostname)
        except ValueError:
            return ""
    return normalize_host(v.split("/", 1)[0].split(":", 1)[0])


def _trusted_from_host(ctx: BrokerContext, hint: Optional[str]) -> Optional[str]:
    host = _host_hint(hint)
    if not host or host == ctx.cfg.auth_host:
        return None
    if ctx.policy.is_allowed(host):
        return host
    if not is_local_dev_host(host) and ctx.tenants.is_registered(host):
        return host
    return None


def _base_origin(ctx: BrokerContext, from_host: Optional[str]) -> str:
    return _origin_for_host(from_host) if from_host else ctx.cfg.default_app_origin


def _referer_destination(ctx: BrokerContext, request: Request) -> Optional[str]:
    referer = (request.headers.get("referer") or "").strip()
    host = _host_hint(referer)
    if not host or host == ctx.cfg.auth_host or not ctx.policy.is_allowed(host):
        return None
    return referer


def build_return_url(auth_origin: str, to: str, from_host: Optional[str] = None) -> str:
    params = {"to": to}
    if from_host:
        params["from"] = from_host
    return f"{auth_origin.rstrip('/')}/return?{urlencode(params)}"


def _strip_token_fragment(url: str) -> str:
    base, sep, fragment = url.partition("#")
    if sep and fragment.split("=", 1)[0] in _TOKEN_FRAGMENT_KEYS:
        return base
    return url


def _recover_last_tenant(ctx: BrokerContext, request: Request, url: str) -> str:
    parts = urlsplit(url)
    if normalize_host(parts.hostname) != ctx.cfg.default_app_host:
        return url
    if parts.path not in _ROOTISH_APP_PATHS:
        return url
    slug = read_last_tenant(request, ctx.cfg)
    if not slug:
        return url
    return urlunsplit((parts.scheme, parts.netloc, f"/tenant/{slug}", parts.query, parts.fragment))


def _resolve_destination(ctx: BrokerContext, raw: Optional[str], base_origin: str) -> ReturnDestination:
    return resolve(raw, base_origin, ctx.policy, is_tenant_domain=ctx.tenants.is_registered)


def _needs_handoff(ctx: BrokerContext, host: str) -> bool:
    if ctx.policy.shares_cookie_domain(host) or is_local_dev_host(host):
        return False
    return ctx.tenants.is_registered(host)


def _with_handoff(ctx: BrokerContext, url: str, host: str, identity: Optional[IdentityClaims]) -> str:
    """
    Append a handoff assertion for cookie-isolated tenant domains.

    Shared-cookie destinations never get a token: the parent-domain session cookie is the
    canonical channel there. Any signing failure degrades to a plain redirect.
    """
    url = _strip_token_fragment(url)
    if not _needs_handoff(ctx, host):
        return url
    if identity is None:
        logger.info("No session for handoff to %s; redirecting without assertion", host)
        return url
    try:
        token = sign(
            identity,
            url,
            ctx.cfg.handoff_secret,
            issuer=ctx.cfg.auth_origin,
            ttl_seconds=ctx.cfg.handoff_ttl_seconds,
        )
    except HandoffError as e:
        logger.warning("Handoff skipped for %s: %s", host, str(e))
        return url
    return attach_to_fragment(url, token)


def _pick_return_source(ctx: BrokerContext, request: Request, to: Optional[str], pending: PendingReturn) -> Tuple[Optional[str], str]:
    # Precedence: explicit query param > pending-return cookie > referer > default.
    # A present-but-empty `to` still wins and falls back.
    if to is not None:
        return to, "query"
    if pending.is_pending and pending.return_to:
        return pending.return_to, "pending"
    referer = _referer_destination(ctx, request)
    if referer:
        return referer, "referer"
    return None, "default"


def _request_cookie_override(request: Request, updates: Dict[str, str]) -> None:
    """Rewrite the Cookie header seen by downstream handlers of this request."""
    cookies = dict(request.cookies)
    cookies.update(updates)
    header = "; ".join(f"{k}={v}" for k, v in cookies.items()).encode("latin-1", errors="ignore")
    headers = [(k, v) for k, v in request.scope.get("headers", []) if k.lower() != b"cookie"]
    headers.append((b"cookie", header))
    request.scope["headers"] = headers


def create_app(
    cfg: Optional[BrokerConfig] = None,
    *,
    sessions: Optional[SessionProvider] = None,
    tenants: Optional[TenantDomainResolver] = None,
) -> FastAPI:
    cfg = cfg or load_broker_config()
    app = FastAPI(title="Auth broker")
    app.state.broker = BrokerContext(
        cfg=cfg,
        policy=AllowedHostPolicy.from_config(cfg),
        sessions=sessions or SessionProvider(cfg),
        tenants=tenants or TenantDomainResolver.from_config(cfg),
    )

    @app.middleware("http")
    async def broker_hops(request: Request, call_next):
        """Request logging, the `/tenant` safety net and the OAuth callback hop."""
        start_time = time.time()
        ctx = _ctx(request)
        path = request.url.path or ""
        logger.debug("%s %s", request.method, path)
        try:
            # Sign-out callbacks that kept a /tenant path land here; bounce to the app host.
            if path == "/tenant" or path.startswith("/tenant/"):
                host = normalize_host(request.url.hostname)
                if host and host != ctx.cfg.default_app_host:
                    query = request.url.query
                    return _redirect(f"{ctx.cfg.default_app_origin}{path}" + (f"?{query}" if query else ""))

            pinned: Optional[str] = None
            if path.startswith(_CALLBACK_HOP_PREFIX):
                pending = read_pending(request, ctx.cfg)
                if pending.is_pending:
                    candidate = pending.callback_url
                    if not candidate and pending.return_to:
                        candidate = build_return_url(ctx.cfg.auth_origin, pending.return_to, pending.from_host)
                    if candidate:
                        pinned = cookie_safe_url(decide(candidate, ctx.cfg.auth_origin, ctx.policy))
                        _request_cookie_override(request, {name: pinned for name in callback_cookie_names(ctx.cfg)})

            response = await call_next(request)
            if pinned:
                pin_callback_url(response, ctx.cfg, pinned)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, process_time)
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, path, process_time, str(e))
            raise

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/")
    def index(request: Request) -> RedirectResponse:
        return _redirect(_ctx(request).cfg.fallback_url)

    @app.get("/return")
    def return_bridge(
        request: Request,
        to: Optional[str] = Query(None),
        from_hint: Optional[str] = Query(None, alias="from"),
    ) -> RedirectResponse:
        """Terminal hop after authentication: resolve the final destination and redirect."""
        ctx = _ctx(request)
        cfg = ctx.cfg
        try:
            pending = read_pending(request, cfg)
            raw, source = _pick_return_source(ctx, request, to, pending)
            from_host = _trusted_from_host(ctx, from_hint or (pending.from_host if source == "pending" else None))
            if raw is None:
                raw = f"{cfg.default_app_origin}/"

            dest = _resolve_destination(ctx, raw, _base_origin(ctx, from_host))
            if not dest.ok or dest.origin_host == cfg.auth_host:
                logger.info("Return destination from %s rejected (%s); using fallback", source, dest.reason)
                url = cfg.fallback_url
            else:
                url = _recover_last_tenant(ctx, request, dest.url_or(cfg.fallback_url))
                identity = ctx.sessions.read_identity(request)
                url = _with_handoff(ctx, url, dest.origin_host, identity)

            resp = _redirect(url)
            if pending.is_pending:
                write_pending(resp, cfg, PendingReturn.consumed())
            return resp
        except Exception:
            logger.exception("Return bridge failed; using fallback")
            return _redirect(cfg.fallback_url)

    @app.get("/bridge")
    def bridge(
        request: Request,
        return_to: Optional[str] = Query(None, alias="returnTo"),
        return_alias: Optional[str] = Query(None, alias="return"),
        to: Optional[str] = Query(None),
        callback_url: Optional[str] = Query(None, alias="callbackUrl"),
    ) -> RedirectResponse:
        """Entry for flows started on a tenant's booking domain."""
        ctx = _ctx(request)
        cfg = ctx.cfg
        try:
            raw = next((v for v in (return_to, return_alias, to, callback_url) if v and v.strip()), None)
            if raw is None:
                pending = read_pending(request, cfg)
                raw = pending.return_to if pending.is_pending else None
            if raw is None:
                raw = read_callback_url(request, cfg)

            dest = _resolve_destination(ctx, raw, cfg.default_app_origin)
            if not dest.ok or dest.origin_host == cfg.auth_host:
                logger.info("Bridge destination rejected (%s); using fallback", dest.reason)
                return _redirect(cfg.fallback_url)
            url = dest.url_or(cfg.fallback_url)

            identity = ctx.sessions.read_identity(request)
            if identity is None:
                again = f"{cfg.auth_origin}/bridge?{urlencode({'returnTo': url})}"
                return _redirect(f"{cfg.auth_origin}/auth/signin?{urlencode({'callbackUrl': again})}")

            return _redirect(_with_handoff(ctx, url, dest.origin_host, identity))
        except Exception:
            logger.exception("Bridge failed; using fallback")
            return _redirect(cfg.fallback_url)

    @app.post("/api/auth/set-callback")
    def set_callback(request: Request, callback_url: Optional[str] = Query(None, alias="callbackUrl")) -> JSONResponse:
        """Store a validated absolute URL as the provider's callback-url cookie."""
        ctx = _ctx(request)
        cfg = ctx.cfg
        dest = resolve(callback_url, cfg.fallback_url, ctx.policy)
        accepted = dest.ok and dest.is_absolute
        safe = dest.url_or(cfg.fallback_url) if accepted else cfg.fallback_url

        resp = JSONResponse(content=SetCallbackResponse(ok=True, callbackUrl=safe).model_dump())
        resp.headers["Cache-Control"] = "no-store"
        pin_callback_url(resp, cfg, safe)
        if accepted:
            pending = PendingReturn.pending(
                return_to=safe,
                callback_url=build_return_url(cfg.auth_origin, safe, dest.origin_host),
                from_host=dest.origin_host,
            )
        else:
            pending = PendingReturn.consumed()
        write_pending(resp, cfg, pending)
        return resp

    @app.get("/auth/signin")
    @app.get("/api/auth/signin")
    def signin(
        request: Request,
        callback_url: Optional[str] = Query(None, alias="callbackUrl"),
        return_to: Optional[str] = Query(None, alias="returnTo"),
        from_hint: Optional[str] = Query(None, alias="from"),
    ) -> RedirectResponse:
        """
        Sign-in entry: pin the destination, then hand off to the session provider.

        A callback that is not on the broker's own origin is wrapped into `/return` so the
        provider only ever redirects same-origin; the final hop happens in the bridge.
        """
        ctx = _ctx(request)
        cfg = ctx.cfg
        auth = cfg.auth_origin
        try:
            from_host = _trusted_from_host(ctx, from_hint) or _trusted_from_host(ctx, request.headers.get("referer"))

            final_return: Optional[str] = None
            if return_to and return_to.strip():
                r = _resolve_destination(ctx, return_to, _base_origin(ctx, from_host))
                if r.ok and r.origin_host != cfg.auth_host:
                    final_return = r.resolved_url

            effective: Optional[str] = None
            if callback_url and callback_url.strip():
                decided = decide(callback_url, auth, ctx.policy)
                if decided.rstrip("/") != auth:
                    effective = decided

            if effective and not _same_origin(effective, auth):
                final_return = final_return or effective
                effective = None
            if effective is None:
                effective = build_return_url(auth, final_return, from_host) if final_return else f"{auth}/return"

            resp_url = effective
            if ctx.sessions.read_identity(request) is None:
                resp_url = f"{auth}{cfg.provider_signin_path}?{urlencode({'callbackUrl': effective})}"

            resp = _redirect(resp_url)
            pin_callback_url(resp, cfg, effective)
            write_pending(
                resp,
                cfg,
                PendingReturn.pending(return_to=final_return, callback_url=effective, from_host=from_host),
            )
            return resp
        except Exception:
            logger.exception("Sign-in entry failed; sending to provider without a pinned destination")
            return _redirect(f"{auth}{cfg.provider_signin_path}")

    @app.get("/auth/signout")
    def signout(request: Request, callback_url: Optional[str] = Query(None, alias="callbackUrl")) -> RedirectResponse:
        """Clear the shared session cookie, then follow the redirect policy."""
        ctx = _ctx(request)
        cfg = ctx.cfg
        dest = decide(callback_url, cfg.auth_origin, ctx.policy)
        resp = _redirect(dest)
        for kwargs in clear_session_cookie_kwargs(cfg):
            resp.set_cookie(**kwargs)
        return resp

    return app


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    cfg = load_broker_config()
    logger.info(
        "Starting auth broker on %s:%d (auth_origin=%s apex=%s tenant_resolver=%s handoff=%s)",
        host,
        port,
        cfg.auth_origin,
        cfg.apex_domain,
        "on" if cfg.tenant_resolver_url else "off",
        "on" if cfg.handoff_secret else "off",
    )
    uvicorn.run(create_app(cfg), host=host, port=port, log_level=uvicorn_log_level)
