"""Dependency graph and monitoring snapshot operations."""

import logging
import sqlite3
from typing import Callable, Iterable, List

from trustcast.types import DependencyEdge, DependencyType, ServiceHealthSnapshot, to_iso

logger = logging.getLogger(__name__)


def _row_to_edge(row: sqlite3.Row) -> DependencyEdge:
    return DependencyEdge(
        service_name=row["service_name"],
        depends_on=row["depends_on"],
        dependency_type=DependencyType(row["dependency_type"]),
        weight=row["weight"],
    )


def upsert_dependencies(connect_fn: Callable, edges: Iterable[DependencyEdge], now: str) -> int:
    """Insert or update dependency edges. Returns the number written."""
    written = 0
    with connect_fn() as conn:
        for edge in edges:
            conn.execute(
                "INSERT INTO service_dependencies "
                "(service_name, depends_on, dependency_type, weight, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(service_name, depends_on) DO UPDATE SET "
                "dependency_type = excluded.dependency_type, weight = excluded.weight, "
                "updated_at = excluded.updated_at",
                (
                    edge.service_name,
                    edge.depends_on,
                    DependencyType(edge.dependency_type).value,
                    edge.weight,
                    now,
                ),
            )
            written += 1
    return written


def delete_dependency(connect_fn: Callable, service_name: str, depends_on: str) -> bool:
    with connect_fn() as conn:
        cursor = conn.execute(
            "DELETE FROM service_dependencies WHERE service_name = ? AND depends_on = ?",
            (service_name, depends_on),
        )
        return cursor.rowcount > 0


def get_dependencies(connect_fn: Callable) -> List[DependencyEdge]:
    """The full dependency edge set."""
    with connect_fn() as conn:
        rows = conn.execute(
            "SELECT * FROM service_dependencies ORDER BY service_name, depends_on"
        ).fetchall()
        return [_row_to_edge(r) for r in rows]


def record_snapshots(
    connect_fn: Callable, snapshots: Iterable[ServiceHealthSnapshot], now: str
) -> int:
    written = 0
    with connect_fn() as conn:
        for snap in snapshots:
            conn.execute(
                "INSERT INTO monitoring_snapshots "
                "(service_name, status, error_rate, latency_ms, observed_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    snap.service_name,
                    snap.status.value,
                    snap.error_rate,
                    snap.latency_ms,
                    to_iso(snap.observed_at) or now,
                ),
            )
            written += 1
    return written


def get_recent_latencies(connect_fn: Callable, service_name: str, limit: int) -> List[float]:
    """Most recent latency samples for a service, oldest first."""
    with connect_fn() as conn:
        rows = conn.execute(
            "SELECT latency_ms FROM monitoring_snapshots WHERE service_name = ? "
            "ORDER BY observed_at DESC, id DESC LIMIT ?",
            (service_name, limit),
        ).fetchall()
    return [float(r["latency_ms"]) for r in reversed(rows)]
