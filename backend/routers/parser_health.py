"""
Parser Health Router

GET /api/parser-health/metrics        — per-month anomaly rate and health score
GET /api/parser-health/anomalies      — most recent anomalies
GET /api/parser-health/anomaly-types  — occurrence count per anomaly type
"""
import json
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, Query
import aiosqlite

from db.database import get_db
from models.schemas import AnomalyTypeStats, ParserHealthMetric, StoredAnomaly

router = APIRouter()


def health_score(total: int, with_anomalies: int) -> int:
    """Share of receipts parsed without any anomaly, 0–100."""
    if not total:
        return 100
    return round(100 * (1 - with_anomalies / total))


@router.get("/metrics", response_model=List[ParserHealthMetric])
async def parser_metrics(
    months: int = Query(default=6, ge=1, le=24),
    db: aiosqlite.Connection = Depends(get_db),
):
    async with db.execute(
        """
        SELECT
            strftime('%Y-%m', r.created_at) AS month,
            COUNT(*) AS total_receipts,
            SUM(CASE WHEN EXISTS (
                    SELECT 1 FROM parser_anomalies a WHERE a.receipt_id = r.id
                ) THEN 1 ELSE 0 END) AS receipts_with_anomalies,
            SUM(r.fallback_used) AS fallback_receipts
        FROM receipts r
        WHERE r.created_at >= date('now', 'start of month', ? || ' months')
        GROUP BY month
        ORDER BY month
        """,
        (f"-{months - 1}",),
    ) as cur:
        rows = await cur.fetchall()

    if not rows:
        month = datetime.now(timezone.utc).strftime("%Y-%m")
        return [ParserHealthMetric(
            month=month, total_receipts=0, receipts_with_anomalies=0,
            fallback_receipts=0, health_score=100,
        )]

    return [
        ParserHealthMetric(
            month=r["month"],
            total_receipts=r["total_receipts"],
            receipts_with_anomalies=r["receipts_with_anomalies"] or 0,
            fallback_receipts=r["fallback_receipts"] or 0,
            health_score=health_score(r["total_receipts"], r["receipts_with_anomalies"] or 0),
        )
        for r in rows
    ]


@router.get("/anomalies", response_model=List[StoredAnomaly])
async def recent_anomalies(
    limit: int = Query(default=10, ge=1, le=100),
    db: aiosqlite.Connection = Depends(get_db),
):
    async with db.execute(
        """
        SELECT a.anomaly_type, a.description, a.severity, a.affected_item,
               a.created_at, r.store_name
        FROM parser_anomalies a
        JOIN receipts r ON r.id = a.receipt_id
        ORDER BY a.created_at DESC, a.id DESC
        LIMIT ?
        """,
        (limit,),
    ) as cur:
        rows = await cur.fetchall()
    return [
        {**dict(r), "affected_item": json.loads(r["affected_item"]) if r["affected_item"] else None}
        for r in rows
    ]


@router.get("/anomaly-types", response_model=List[AnomalyTypeStats])
async def anomaly_types(db: aiosqlite.Connection = Depends(get_db)):
    async with db.execute(
        """
        SELECT anomaly_type, COUNT(*) AS occurrence_count, MAX(created_at) AS last_seen
        FROM parser_anomalies
        GROUP BY anomaly_type
        ORDER BY occurrence_count DESC, anomaly_type
        """
    ) as cur:
        rows = await cur.fetchall()
    return [dict(r) for r in rows]
