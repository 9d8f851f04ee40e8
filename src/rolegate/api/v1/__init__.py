# src/rolegate/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import verification_router

__all__ = ["verification_router"]
