"""Prediction CRUD operations.

Prediction ids are deterministic per (service, type, time bucket), so
saving is an upsert: a re-run inside the same tick refreshes the live row
instead of adding a duplicate. Acknowledge/resolve state is never touched
by the upsert.
"""

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from trustcast.types import Prediction, PredictionType, parse_datetime, to_iso

logger = logging.getLogger(__name__)


def _row_to_prediction(row: sqlite3.Row) -> Prediction:
    """Convert a database row to a Prediction."""
    return Prediction(
        id=row["id"],
        service_name=row["service_name"],
        prediction_type=PredictionType(row["prediction_type"]),
        confidence=row["confidence"],
        time_to_failure_seconds=row["time_to_failure_seconds"],
        details=json.loads(row["details"] or "{}"),
        created_at=parse_datetime(row["created_at"]),
        expires_at=parse_datetime(row["expires_at"]),
        acknowledged_at=parse_datetime(row["acknowledged_at"]),
        resolved_at=parse_datetime(row["resolved_at"]),
    )


def save_prediction(connect_fn: Callable, prediction: Prediction) -> str:
    """Insert or refresh a prediction. Returns the prediction ID."""
    with connect_fn() as conn:
        conn.execute(
            """
            INSERT INTO predictions
                (id, service_name, prediction_type, confidence, time_to_failure_seconds,
                 details, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                confidence = excluded.confidence,
                time_to_failure_seconds = excluded.time_to_failure_seconds,
                details = excluded.details,
                expires_at = excluded.expires_at
            """,
            (
                prediction.id,
                prediction.service_name,
                prediction.prediction_type.value,
                prediction.confidence,
                prediction.time_to_failure_seconds,
                json.dumps(prediction.details, sort_keys=True, default=str),
                to_iso(prediction.created_at),
                to_iso(prediction.expires_at),
            ),
        )
    return prediction.id


def get_prediction(connect_fn: Callable, prediction_id: str) -> Optional[Prediction]:
    with connect_fn() as conn:
        row = conn.execute("SELECT * FROM predictions WHERE id = ?", (prediction_id,)).fetchone()
        return _row_to_prediction(row) if row else None


def get_active_predictions(
    connect_fn: Callable,
    now: str,
    service_name: Optional[str] = None,
    limit: int = 50,
) -> List[Prediction]:
    """Unresolved, unexpired predictions by confidence then recency."""
    query = "SELECT * FROM predictions WHERE resolved_at IS NULL AND expires_at > ?"
    params: List[Any] = [now]
    if service_name:
        query += " AND service_name = ?"
        params.append(service_name)
    query += " ORDER BY confidence DESC, created_at DESC LIMIT ?"
    params.append(limit)

    with connect_fn() as conn:
        rows = conn.execute(query, params).fetchall()
        return [_row_to_prediction(r) for r in rows]


def mark_acknowledged(connect_fn: Callable, prediction_id: str, now: str) -> bool:
    with connect_fn() as conn:
        cursor = conn.execute(
            "UPDATE predictions SET acknowledged_at = ? WHERE id = ?",
            (now, prediction_id),
        )
        return cursor.rowcount > 0


def mark_resolved(connect_fn: Callable, prediction_id: str, now: str) -> bool:
    with connect_fn() as conn:
        cursor = conn.execute(
            "UPDATE predictions SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
            (now, prediction_id),
        )
        return cursor.rowcount > 0


def get_prediction_stats(connect_fn: Callable, now: str) -> Dict[str, Any]:
    """Totals plus per-type counts and mean confidence of active predictions."""
    with connect_fn() as conn:
        total = conn.execute("SELECT COUNT(*) FROM predictions").fetchone()[0]
        active = conn.execute(
            "SELECT COUNT(*) FROM predictions WHERE resolved_at IS NULL AND expires_at > ?",
            (now,),
        ).fetchone()[0]
        rows = conn.execute(
            "SELECT prediction_type, COUNT(*) AS count, AVG(confidence) AS avg_confidence "
            "FROM predictions WHERE resolved_at IS NULL AND expires_at > ? "
            "GROUP BY prediction_type ORDER BY prediction_type",
            (now,),
        ).fetchall()

    return {
        "total": total,
        "active": active,
        "by_type": {
            r["prediction_type"]: {
                "count": r["count"],
                "avg_confidence": round(r["avg_confidence"], 4),
            }
            for r in rows
        },
    }
