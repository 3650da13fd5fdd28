#!/usr/bin/env python3
"""Mock tenant-domain resolver backend for local development."""

import os
import sys

from flask import Flask, jsonify, request

app = Flask(__name__)

# MOCK_TENANT_DOMAINS="booking.birdie-golf.test=birdie-golf,book.example.test=example"
DOMAINS = dict(
    item.split("=", 1)
    for item in (os.getenv("MOCK_TENANT_DOMAINS", "") or "book.birdie-golf.test=birdie-golf").split(",")
    if "=" in item
)


@app.route("/api/tenant-domains/_public/resolve", methods=["GET"])
def resolve():
    """Return the tenant slug for a registered custom domain, 404 otherwise."""
    domain = (request.args.get("domain") or "").strip().lower()
    slug = DOMAINS.get(domain)
    if not slug:
        return jsonify({"error": "not_found"}), 404
    return jsonify({"domain": domain, "slug": slug})


@app.route("/healthz")
def health():
    """Health check endpoint."""
    return jsonify({"status": "ok"})


if __name__ == "__main__":
    print("Mock tenant resolver starting on http://0.0.0.0:18090", file=sys.stderr)
    app.run(host="0.0.0.0", port=18090, debug=False)
