"""
Receipts Router

POST   /api/receipts/parse  — parse receipt text, nothing saved
POST   /api/receipts        — parse and save for the current user
GET    /api/receipts        — list the user's receipts (summary)
GET    /api/receipts/{id}   — receipt with items and anomalies
DELETE /api/receipts/{id}   — remove a receipt
"""
import logging
from typing import List

import aiosqlite
from fastapi import APIRouter, Depends, Header, HTTPException, Query

from db.database import get_db
from models.schemas import (
    ParsedReceiptOut,
    ParseRequest,
    ReceiptSummary,
    SaveResult,
    StoredReceipt,
)
from services.fallback_service import get_fallback
from services.receipt_parser import ParserInputError, ReceiptParser
from services.receipt_store import delete_receipt, get_receipt, list_receipts, save_parsed_receipt

logger = logging.getLogger("kvitto.receipts")
router = APIRouter()


async def current_user(x_user_id: str = Header(default="local")) -> str:
    """Dependency: the requesting user, from the X-User-Id header."""
    return x_user_id.strip() or "local"


def get_parser() -> ReceiptParser:
    """Dependency: a parser wired to the Claude fallback when a key is configured."""
    return ReceiptParser(fallback=get_fallback())


async def _parse(body: ParseRequest, parser: ReceiptParser):
    try:
        return await parser.parse(body.raw_text, body.store_id)
    except ParserInputError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/parse", response_model=ParsedReceiptOut)
async def parse_receipt(
    body: ParseRequest,
    parser: ReceiptParser = Depends(get_parser),
):
    parsed = await _parse(body, parser)
    return parsed.to_payload()


@router.post("", response_model=SaveResult)
async def save_receipt(
    body: ParseRequest,
    user_id: str = Depends(current_user),
    parser: ReceiptParser = Depends(get_parser),
    db: aiosqlite.Connection = Depends(get_db),
):
    parsed = await _parse(body, parser)
    receipt_id = await save_parsed_receipt(
        db, user_id, parsed, raw_text=body.raw_text, receipt_date=body.receipt_date,
    )
    return SaveResult(receipt_id=receipt_id, receipt=parsed.to_payload())


@router.get("", response_model=List[ReceiptSummary])
async def list_user_receipts(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    return await list_receipts(db, user_id, limit, offset)


@router.get("/{receipt_id}", response_model=StoredReceipt)
async def get_user_receipt(
    receipt_id: int,
    user_id: str = Depends(current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    receipt = await get_receipt(db, user_id, receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return receipt


@router.delete("/{receipt_id}")
async def delete_user_receipt(
    receipt_id: int,
    user_id: str = Depends(current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    if not await delete_receipt(db, user_id, receipt_id):
        raise HTTPException(status_code=404, detail="Receipt not found")
    return {"status": "deleted", "receipt_id": receipt_id}
