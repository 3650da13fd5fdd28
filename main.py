#!/usr/bin/env python3
"""
Auth Broker - central sign-in host for sibling subdomains and tenant custom domains.
Serves the return/bridge redirect endpoints and offers a few offline URL checks.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep broker imports lazy (inside functions) so `--help` works without the web stack.
#


def check_destination(raw: str, base_origin: Optional[str] = None) -> Dict[str, Any]:
    """Run a candidate return destination through the sanitizer and the redirect policy."""
    from broker.auth.config import load_broker_config
    from broker.auth.hosts import AllowedHostPolicy
    from broker.auth.redirect_policy import decide
    from broker.auth.sanitize import resolve

    cfg = load_broker_config()
    policy = AllowedHostPolicy.from_config(cfg)
    dest = resolve(raw, base_origin or cfg.default_app_origin, policy)
    return {
        "input": raw,
        "resolved": dest.resolved_url,
        "host": dest.origin_host or None,
        "absolute": dest.is_absolute,
        "rejected": dest.reason.value if dest.reason else None,
        "sharesCookieDomain": policy.shares_cookie_domain(dest.origin_host) if dest.ok else None,
        "redirectPolicy": decide(raw, cfg.auth_origin, policy),
    }


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Central auth broker (return/bridge redirects and cross-domain handoff)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the broker
  python main.py --serve --port 8080

  # Check where a return destination would land
  python main.py --check "https://app.flexrz.com/tenant/birdie-golf"
  python main.py --check /tenant/abc --base https://owner.flexrz.com
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the broker HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--check", metavar="URL", help="Sanitize a return destination and print the decision as JSON")
    parser.add_argument("--base", metavar="ORIGIN", help="Base origin for relative paths (used with --check)")

    args = parser.parse_args()

    if args.serve:
        from broker.api.server import run

        run(host=args.host, port=args.port)
        return

    if args.check is not None:
        print(json.dumps(check_destination(args.check, args.base), indent=2, sort_keys=False))
        return

    parser.print_help()


if __name__ == "__main__":
    main()
