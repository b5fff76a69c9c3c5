"""
Core security components.

This package contains the building blocks the API routes call into:
- Field encryption (crypto) and per-entity codecs (fields)
- Document storage with optimistic concurrency (storage)
- Credentials, refresh token lifecycle and password flows
- Sessions and CSRF protection
- Audit log, rate limiting and intrusion heuristics
- Metrics collection and readiness checks
"""
