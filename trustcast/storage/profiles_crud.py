"""Experience profile and trust evolution CRUD operations.

All functions receive dependencies explicitly (connection factory, clock
strings) so they can be tested independently of SQLiteStorage.
"""

import json
import logging
import sqlite3
from typing import Callable, List, Optional

from trustcast.types import (
    ExperienceProfile,
    TrustEvolutionRecord,
    VersionConflictError,
    parse_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)


def _row_to_profile(row: sqlite3.Row) -> ExperienceProfile:
    """Convert a database row to an ExperienceProfile."""
    return ExperienceProfile(
        identity_anchor=row["identity_anchor"],
        total_interactions=row["total_interactions"],
        total_decisions=row["total_decisions"],
        total_entities=row["total_entities"],
        current_trust_level=row["current_trust_level"],
        trust_score=row["trust_score"],
        expertise_domains=set(json.loads(row["expertise_domains"] or "[]")),
        success_rate=row["success_rate"],
        risk_score=row["risk_score"],
        anomaly_count=row["anomaly_count"],
        last_anomaly_at=parse_datetime(row["last_anomaly_at"]),
        oldest_interaction=parse_datetime(row["oldest_interaction"]),
        newest_interaction=parse_datetime(row["newest_interaction"]),
        trust_last_calculated=parse_datetime(row["trust_last_calculated"]),
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
        version=row["version"],
    )


def _row_to_evolution(row: sqlite3.Row) -> TrustEvolutionRecord:
    return TrustEvolutionRecord(
        id=row["id"],
        identity_anchor=row["identity_anchor"],
        previous_trust_level=row["previous_trust_level"],
        new_trust_level=row["new_trust_level"],
        previous_trust_score=row["previous_trust_score"],
        new_trust_score=row["new_trust_score"],
        change_trigger=row["change_trigger"],
        change_factors=json.loads(row["change_factors"] or "{}"),
        content_hash=row["content_hash"],
        changed_at=parse_datetime(row["changed_at"]),
    )


def ensure_profile(connect_fn: Callable, identity_anchor: str, now: str) -> bool:
    """Create the default profile for an anchor if none exists.

    Returns:
        True if a new profile was created.
    """
    with connect_fn() as conn:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO experience_profiles "
            "(identity_anchor, created_at, updated_at) VALUES (?, ?, ?)",
            (identity_anchor, now, now),
        )
        return cursor.rowcount > 0


def get_profile(connect_fn: Callable, identity_anchor: str) -> Optional[ExperienceProfile]:
    """Get the profile for an identity anchor."""
    with connect_fn() as conn:
        row = conn.execute(
            "SELECT * FROM experience_profiles WHERE identity_anchor = ?",
            (identity_anchor,),
        ).fetchone()
        return _row_to_profile(row) if row else None


def _check_version(conn: sqlite3.Connection, identity_anchor: str, expected_version: int) -> None:
    current = conn.execute(
        "SELECT version FROM experience_profiles WHERE identity_anchor = ?",
        (identity_anchor,),
    ).fetchone()
    actual = current["version"] if current else -1
    if actual != expected_version:
        raise VersionConflictError("experience_profiles", identity_anchor, expected_version, actual)


def _update_profile_row(
    conn: sqlite3.Connection, profile: ExperienceProfile, now: str, expected_version: int
) -> None:
    cursor = conn.execute(
        """
        UPDATE experience_profiles SET
            total_interactions = ?,
            total_decisions = ?,
            total_entities = ?,
            current_trust_level = ?,
            trust_score = ?,
            expertise_domains = ?,
            success_rate = ?,
            risk_score = ?,
            anomaly_count = ?,
            last_anomaly_at = ?,
            oldest_interaction = ?,
            newest_interaction = ?,
            trust_last_calculated = ?,
            updated_at = ?,
            version = version + 1
        WHERE identity_anchor = ? AND version = ?
        """,
        (
            profile.total_interactions,
            profile.total_decisions,
            profile.total_entities,
            profile.current_trust_level,
            profile.trust_score,
            json.dumps(sorted(profile.expertise_domains)),
            profile.success_rate,
            profile.risk_score,
            profile.anomaly_count,
            to_iso(profile.last_anomaly_at),
            to_iso(profile.oldest_interaction),
            to_iso(profile.newest_interaction),
            to_iso(profile.trust_last_calculated),
            now,
            profile.identity_anchor,
            expected_version,
        ),
    )
    if cursor.rowcount == 0:
        conn.rollback()
        _check_version(conn, profile.identity_anchor, expected_version)
        # Version matched on re-read but the row vanished in between
        raise VersionConflictError(
            "experience_profiles", profile.identity_anchor, expected_version, -1
        )


def update_profile(
    connect_fn: Callable,
    profile: ExperienceProfile,
    now: str,
    expected_version: Optional[int] = None,
) -> ExperienceProfile:
    """Update a profile with optimistic concurrency control.

    Args:
        connect_fn: Context manager returning a DB connection.
        profile: The profile with updated fields.
        now: Current UTC timestamp as ISO string.
        expected_version: The version we expect the stored row to have.
                         If None, uses profile.version.

    Returns:
        The profile with its version advanced.

    Raises:
        VersionConflictError: If the stored version doesn't match expected.
    """
    if expected_version is None:
        expected_version = profile.version

    with connect_fn() as conn:
        _check_version(conn, profile.identity_anchor, expected_version)
        _update_profile_row(conn, profile, now, expected_version)

    profile.version = expected_version + 1
    profile.updated_at = parse_datetime(now)
    return profile


def apply_trust_change(
    connect_fn: Callable,
    profile: ExperienceProfile,
    record: TrustEvolutionRecord,
    now: str,
    expected_version: Optional[int] = None,
) -> ExperienceProfile:
    """Write new trust state and its evolution record in one transaction."""
    if expected_version is None:
        expected_version = profile.version

    with connect_fn() as conn:
        _check_version(conn, profile.identity_anchor, expected_version)
        _update_profile_row(conn, profile, now, expected_version)
        conn.execute(
            "INSERT INTO trust_evolution_log "
            "(id, identity_anchor, previous_trust_level, new_trust_level, "
            "previous_trust_score, new_trust_score, change_trigger, change_factors, "
            "content_hash, changed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.identity_anchor,
                record.previous_trust_level,
                record.new_trust_level,
                record.previous_trust_score,
                record.new_trust_score,
                record.change_trigger,
                json.dumps(record.change_factors, sort_keys=True),
                record.content_hash,
                to_iso(record.changed_at) or now,
            ),
        )

    profile.version = expected_version + 1
    profile.updated_at = parse_datetime(now)
    return profile


def get_trust_history(
    connect_fn: Callable,
    identity_anchor: str,
    limit: int = 100,
) -> List[TrustEvolutionRecord]:
    """Evolution records for an anchor, newest first."""
    with connect_fn() as conn:
        rows = conn.execute(
            "SELECT * FROM trust_evolution_log WHERE identity_anchor = ? "
            "ORDER BY changed_at DESC, rowid DESC LIMIT ?",
            (identity_anchor, limit),
        ).fetchall()
        return [_row_to_evolution(r) for r in rows]


def count_trust_history(connect_fn: Callable, identity_anchor: str) -> int:
    with connect_fn() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM trust_evolution_log WHERE identity_anchor = ?",
            (identity_anchor,),
        ).fetchone()[0]
