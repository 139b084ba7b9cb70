"""
API Routers
Separate router modules for each domain.
"""

from app.routers import kernel

__all__ = ["kernel"]
