# src/rolegate/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .verification import router as verification_router

__all__ = ["verification_router"]
