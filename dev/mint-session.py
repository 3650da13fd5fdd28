#!/usr/bin/env python3
"""Print a signed session cookie for local development (mirrors the session provider's writer)."""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from broker.auth.config import load_broker_config  # noqa: E402
from broker.auth.models import IdentityClaims  # noqa: E402
from broker.auth.session import encode_session, session_cookie_name  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Mint a dev session cookie (requires AUTH_SESSION_SECRET)")
    parser.add_argument("--sub", default="dev-user-1", help="Subject id")
    parser.add_argument("--email", default="dev@example.test", help="Email claim")
    parser.add_argument("--name", default="Dev User", help="Display name")
    parser.add_argument("--id-token", default=None, help="Provider ID token to embed")
    args = parser.parse_args()

    cfg = load_broker_config()
    value = encode_session(
        cfg,
        IdentityClaims(subject=args.sub, email=args.email, name=args.name, provider_id_token=args.id_token),
    )
    if value is None:
        print("AUTH_SESSION_SECRET is not set", file=sys.stderr)
        sys.exit(1)
    print(f"{session_cookie_name(cfg)}={value}")


if __name__ == "__main__":
    main()
