"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    errors          — exception hierarchy & handlers
    middleware      — request logging, correlation IDs
    health          — health check aggregation
    database        — async SQLAlchemy engine & ORM base
    cache           — Redis subscriber cache
"""
