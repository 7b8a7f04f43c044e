"""
gox: shared scaffolding for backend services.

This package aggregates the building blocks every service bootstraps with:

- rest: HTTP server lifecycle, default middleware and JSON helpers
- probe: readiness and aliveness endpoints
- logging: structured loggers via structlog
- config: environment configuration via pydantic-settings
- pgpool: asyncpg connection pool factory
- jwk: cached JWKS public-key provider
- misc: small list helpers
"""

__version__ = "1.0.0"
