"""
Items Router

PATCH /api/items/{id}/category          — manually correct a line item's category
POST  /api/items/suggest-categories     — category proposals for a batch of names
GET   /api/items/categories             — enabled category keys
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
import aiosqlite

from db.database import get_db
from models.schemas import CategorySuggestion, CategoryUpdate, SuggestRequest
from routers.receipts import current_user
from services.categorize_service import CategorizationError, get_categories, suggest_categories
from services.receipt_store import update_item_category

logger = logging.getLogger("kvitto.items")
router = APIRouter()


@router.patch("/{item_id}/category")
async def correct_item_category(
    item_id: int,
    body: CategoryUpdate,
    user_id: str = Depends(current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    valid = await get_categories(db)
    if body.category not in valid:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid category. Must be one of: {', '.join(valid)}"
        )

    if not await update_item_category(db, user_id, item_id, body.category):
        raise HTTPException(status_code=404, detail="Item not found")
    return {"status": "ok", "item_id": item_id, "category": body.category}


@router.post("/suggest-categories", response_model=List[CategorySuggestion])
async def suggest(
    body: SuggestRequest,
    user_id: str = Depends(current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        return await suggest_categories(db, user_id, body.names)
    except CategorizationError as e:
        raise HTTPException(status_code=502, detail=f"Category suggestion failed: {e}")


@router.get("/categories", response_model=List[str])
async def list_categories(db: aiosqlite.Connection = Depends(get_db)):
    return await get_categories(db)
