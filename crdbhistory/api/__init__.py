"""REST API layer for crdbhistory.

Exposes:
    create_app -- FastAPI application factory.
"""

from crdbhistory.api.app import create_app

__all__ = ["create_app"]
