"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty console logging
    errors          — exception hierarchy & FastAPI handlers
    middleware      — request logging for the backend of record
    database        — device-local durable key-value store
"""
