"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.bulk_ingest import router as bulk_ingest_router
from routes.credits import router as credits_router

__all__ = [
    "bulk_ingest_router",
    "credits_router",
]
