from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class IdentityClaims:
    """Signed-in user as reported by the session provider (read-only to the broker)."""

    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    provider: str = "google"
    provider_id_token: Optional[str] = None
    # Provider tokens stay server-side; they are never forwarded to other domains.
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at_ms: Optional[int] = None
