"""Session binding CRUD operations.

Handles the ephemeral session -> identity anchor bindings and their
per-session counters.
"""

import logging
import sqlite3
import uuid
from typing import Callable, List, Optional

from trustcast.types import SessionBinding, UnbindReason, parse_datetime

logger = logging.getLogger(__name__)

# Counter columns callers may increment (security: column names are interpolated)
SESSION_METRICS = frozenset({"interactions_count", "decisions_count", "entities_discovered"})


def escape_like_pattern(pattern: str) -> str:
    """Escape LIKE pattern special characters to prevent pattern injection."""
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_binding(row: sqlite3.Row) -> SessionBinding:
    """Convert a database row to a SessionBinding."""
    return SessionBinding(
        id=row["id"],
        session_id=row["session_id"],
        identity_anchor=row["identity_anchor"],
        platform=row["platform"],
        client_fingerprint=row["client_fingerprint"],
        bound_at=parse_datetime(row["bound_at"]),
        last_activity=parse_datetime(row["last_activity"]),
        unbound_at=parse_datetime(row["unbound_at"]),
        unbind_reason=row["unbind_reason"],
        interactions_count=row["interactions_count"],
        decisions_count=row["decisions_count"],
        entities_discovered=row["entities_discovered"],
        session_risk_score=row["session_risk_score"],
        session_success_rate=row["session_success_rate"],
    )


def get_active_binding(connect_fn: Callable, session_id: str) -> Optional[SessionBinding]:
    """Get the active binding for a session id, if any."""
    with connect_fn() as conn:
        row = conn.execute(
            "SELECT * FROM session_bindings WHERE session_id = ? AND unbound_at IS NULL",
            (session_id,),
        ).fetchone()
        return _row_to_binding(row) if row else None


def create_binding(
    connect_fn: Callable,
    session_id: str,
    identity_anchor: str,
    platform: str,
    client_fingerprint: str,
    now: str,
) -> SessionBinding:
    """Bind a session to an anchor.

    If another invocation bound the same session first, the existing active
    binding is returned instead of creating a second one.
    """
    binding_id = str(uuid.uuid4())
    with connect_fn() as conn:
        try:
            conn.execute(
                "INSERT INTO session_bindings "
                "(id, session_id, identity_anchor, platform, client_fingerprint, "
                "bound_at, last_activity) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (binding_id, session_id, identity_anchor, platform, client_fingerprint, now, now),
            )
        except sqlite3.IntegrityError:
            logger.debug(f"Session {session_id} already has an active binding")
            conn.rollback()
        row = conn.execute(
            "SELECT * FROM session_bindings WHERE session_id = ? AND unbound_at IS NULL",
            (session_id,),
        ).fetchone()
        return _row_to_binding(row)


def touch_binding(connect_fn: Callable, session_id: str, now: str) -> bool:
    """Refresh last_activity on the active binding. Returns False if none."""
    with connect_fn() as conn:
        cursor = conn.execute(
            "UPDATE session_bindings SET last_activity = ? "
            "WHERE session_id = ? AND unbound_at IS NULL",
            (now, session_id),
        )
        return cursor.rowcount > 0


def find_anchor_by_user(connect_fn: Callable, user_id: str) -> Optional[str]:
    """Most recently active anchor whose fingerprint starts with user:<id>."""
    token = f"user:{user_id}"
    with connect_fn() as conn:
        row = conn.execute(
            "SELECT identity_anchor FROM session_bindings "
            "WHERE client_fingerprint = ? OR client_fingerprint LIKE ? ESCAPE '\\' "
            "ORDER BY last_activity DESC LIMIT 1",
            (token, escape_like_pattern(token) + "|%"),
        ).fetchone()
        return row["identity_anchor"] if row else None


def find_anchor_by_fingerprint(connect_fn: Callable, client_fingerprint: str) -> Optional[str]:
    """Most recently active anchor with exactly this composed fingerprint."""
    with connect_fn() as conn:
        row = conn.execute(
            "SELECT identity_anchor FROM session_bindings WHERE client_fingerprint = ? "
            "ORDER BY last_activity DESC LIMIT 1",
            (client_fingerprint,),
        ).fetchone()
        return row["identity_anchor"] if row else None


def increment_metric(
    connect_fn: Callable,
    session_id: str,
    metric: str,
    amount: int,
    now: str,
) -> bool:
    """Increment a counter column on the active binding."""
    if metric not in SESSION_METRICS:
        raise ValueError(f"Unknown session metric: {metric}")
    with connect_fn() as conn:
        cursor = conn.execute(
            f"UPDATE session_bindings SET {metric} = {metric} + ?, last_activity = ? "
            "WHERE session_id = ? AND unbound_at IS NULL",
            (amount, now, session_id),
        )
        return cursor.rowcount > 0


def record_interaction_counts(
    connect_fn: Callable,
    session_id: str,
    interactions: int,
    decisions: int,
    entities: int,
    now: str,
) -> bool:
    """Add to all three counters in one statement."""
    with connect_fn() as conn:
        cursor = conn.execute(
            "UPDATE session_bindings SET "
            "interactions_count = interactions_count + ?, "
            "decisions_count = decisions_count + ?, "
            "entities_discovered = entities_discovered + ?, "
            "last_activity = ? "
            "WHERE session_id = ? AND unbound_at IS NULL",
            (interactions, decisions, entities, now, session_id),
        )
        return cursor.rowcount > 0


def set_session_risk(connect_fn: Callable, session_id: str, risk_score: float) -> bool:
    with connect_fn() as conn:
        cursor = conn.execute(
            "UPDATE session_bindings SET session_risk_score = ? "
            "WHERE session_id = ? AND unbound_at IS NULL",
            (risk_score, session_id),
        )
        return cursor.rowcount > 0


def finalize_session_metrics(
    connect_fn: Callable,
    binding_id: str,
    interactions: int,
    decisions: int,
    entities: int,
    success_rate: float,
) -> None:
    """Store the aggregated metrics of a committed session on its binding."""
    with connect_fn() as conn:
        conn.execute(
            "UPDATE session_bindings SET interactions_count = ?, decisions_count = ?, "
            "entities_discovered = ?, session_success_rate = ? WHERE id = ?",
            (interactions, decisions, entities, success_rate, binding_id),
        )


def unbind(connect_fn: Callable, session_id: str, reason: UnbindReason | str, now: str) -> bool:
    """Close the active binding. Returns False if the session was not bound."""
    reason = UnbindReason(reason)
    with connect_fn() as conn:
        cursor = conn.execute(
            "UPDATE session_bindings SET unbound_at = ?, unbind_reason = ? "
            "WHERE session_id = ? AND unbound_at IS NULL",
            (now, reason.value, session_id),
        )
        return cursor.rowcount > 0


def get_bindings_for_anchor(
    connect_fn: Callable,
    identity_anchor: str,
    active_only: bool = False,
    limit: int = 100,
) -> List[SessionBinding]:
    """Bindings for an anchor, most recently active first."""
    query = "SELECT * FROM session_bindings WHERE identity_anchor = ?"
    if active_only:
        query += " AND unbound_at IS NULL"
    query += " ORDER BY last_activity DESC, bound_at DESC LIMIT ?"
    with connect_fn() as conn:
        rows = conn.execute(query, (identity_anchor, limit)).fetchall()
        return [_row_to_binding(r) for r in rows]


def average_session_risk(connect_fn: Callable, identity_anchor: str, limit: int) -> Optional[float]:
    """Mean session risk over the anchor's most recent bindings, or None."""
    with connect_fn() as conn:
        row = conn.execute(
            "SELECT AVG(session_risk_score) AS avg_risk, COUNT(*) AS n FROM ("
            "  SELECT session_risk_score FROM session_bindings WHERE identity_anchor = ? "
            "  ORDER BY last_activity DESC LIMIT ?"
            ")",
            (identity_anchor, limit),
        ).fetchone()
        if not row or not row["n"]:
            return None
        return float(row["avg_risk"])
