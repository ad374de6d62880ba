"""
api/routes/v1/permissions.py -- The permission catalog.

  GET /api/v1/permissions -- every assignable key with its display name and category
"""

from __future__ import annotations

from fastapi import APIRouter

from api.models import CatalogEntryResponse
from auth.permissions import CATALOG

router = APIRouter()


@router.get("/permissions", response_model=list[CatalogEntryResponse])
async def list_permissions() -> list[CatalogEntryResponse]:
    return [CatalogEntryResponse(key=e.key, name=e.name, category=e.category) for e in CATALOG]
