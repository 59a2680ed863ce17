"""
MiSub - Local Server Package
=============================
Local emulation of the MiSub admin API, backed by a key-value store.

This package provides:
- FastAPI application exposing the /api endpoints used by the admin UI
- Cookie-based authentication with a shared admin password and signed tokens
- Versioned key-value storage (in-memory or persisted to a JSON file)
- Node group CRUD with read-check-write updates

Architecture:
    main.py    -> FastAPI app creation, CORS envelope, fallback routes
    auth.py    -> Cookie parsing, password check, session tokens
    config.py  -> Read config.yaml and secrets from the environment
    errors.py  -> Error hierarchy and the JSON error envelope
    store.py   -> Key-value store backends and atomic updates
    groups.py  -> Node group validation and persistence
    routes.py  -> All REST API endpoint handlers
"""

__version__ = "1.0.0"
