"""
Redirect, cookie and handoff primitives for the auth broker.

Design goals:
- One allow-list policy for every redirect target (closed by default).
- Pure functions of (input, policy): configuration is passed in, never read from env here.
- Identity crosses cookie-isolated domains only as a short-lived signed fragment token.
"""
