"""
Authentication app.

Provides:
- Bearer JWT validation (shared secret or JWKS)
- Redis-backed rate limiting
- Structured audit logging
- Client IP anonymization
"""
