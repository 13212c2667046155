"""
AniMatch — Main API Router

Aggregates the sub-routers so that a host application can mount the whole
matching surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from animatch.api import matching

router = APIRouter()

router.include_router(matching.router, prefix="/match", tags=["Matching"])
