"""Database schema for trustcast SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "experience_profiles",
        "session_bindings",
        "trust_evolution_log",
        "predictions",
        "service_dependencies",
        "monitoring_snapshots",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- One row per identity anchor
CREATE TABLE IF NOT EXISTS experience_profiles (
    identity_anchor TEXT PRIMARY KEY,
    total_interactions INTEGER NOT NULL DEFAULT 0,
    total_decisions INTEGER NOT NULL DEFAULT 0,
    total_entities INTEGER NOT NULL DEFAULT 0,
    current_trust_level INTEGER NOT NULL DEFAULT 3 CHECK (current_trust_level BETWEEN 0 AND 5),
    trust_score REAL NOT NULL DEFAULT 50.0 CHECK (trust_score BETWEEN 0 AND 100),
    expertise_domains TEXT NOT NULL DEFAULT '[]',   -- JSON array
    success_rate REAL NOT NULL DEFAULT 0.0,
    risk_score REAL NOT NULL DEFAULT 0.0 CHECK (risk_score BETWEEN 0 AND 100),
    anomaly_count INTEGER NOT NULL DEFAULT 0,
    last_anomaly_at TEXT,
    oldest_interaction TEXT,
    newest_interaction TEXT,
    trust_last_calculated TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_profiles_trust_score ON experience_profiles(trust_score DESC);

-- Ephemeral session -> durable anchor
CREATE TABLE IF NOT EXISTS session_bindings (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    identity_anchor TEXT NOT NULL,
    platform TEXT NOT NULL DEFAULT 'unknown',
    client_fingerprint TEXT NOT NULL DEFAULT 'unknown',
    bound_at TEXT NOT NULL,
    last_activity TEXT NOT NULL,
    unbound_at TEXT,
    unbind_reason TEXT CHECK (unbind_reason IN ('session_complete', 'expired', 'revoked')),
    interactions_count INTEGER NOT NULL DEFAULT 0,
    decisions_count INTEGER NOT NULL DEFAULT 0,
    entities_discovered INTEGER NOT NULL DEFAULT 0,
    session_risk_score REAL NOT NULL DEFAULT 0.0,
    session_success_rate REAL
);
-- At most one active binding per session id
CREATE UNIQUE INDEX IF NOT EXISTS idx_bindings_active_session
    ON session_bindings(session_id) WHERE unbound_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_bindings_anchor ON session_bindings(identity_anchor, last_activity DESC);
CREATE INDEX IF NOT EXISTS idx_bindings_fingerprint ON session_bindings(client_fingerprint);

-- Append-only trust audit trail
CREATE TABLE IF NOT EXISTS trust_evolution_log (
    id TEXT PRIMARY KEY,
    identity_anchor TEXT NOT NULL,
    previous_trust_level INTEGER NOT NULL,
    new_trust_level INTEGER NOT NULL,
    previous_trust_score REAL NOT NULL,
    new_trust_score REAL NOT NULL,
    change_trigger TEXT NOT NULL,
    change_factors TEXT NOT NULL DEFAULT '{}',   -- JSON
    content_hash TEXT NOT NULL,
    changed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trust_evolution_anchor ON trust_evolution_log(identity_anchor, changed_at DESC);

-- Predictions
CREATE TABLE IF NOT EXISTS predictions (
    id TEXT PRIMARY KEY,
    service_name TEXT NOT NULL,
    prediction_type TEXT NOT NULL CHECK (prediction_type IN ('failure', 'latency', 'anomaly', 'cascade')),
    confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
    time_to_failure_seconds INTEGER,
    details TEXT NOT NULL DEFAULT '{}',   -- JSON, includes "reasoning"
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    acknowledged_at TEXT,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_predictions_service ON predictions(service_name, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_predictions_active ON predictions(resolved_at, expires_at);
CREATE INDEX IF NOT EXISTS idx_predictions_confidence ON predictions(confidence DESC, created_at DESC);

-- Static dependency graph: service_name depends on depends_on
CREATE TABLE IF NOT EXISTS service_dependencies (
    service_name TEXT NOT NULL,
    depends_on TEXT NOT NULL,
    dependency_type TEXT NOT NULL CHECK (dependency_type IN ('critical', 'optional')),
    weight REAL NOT NULL DEFAULT 1.0 CHECK (weight >= 0 AND weight <= 1),
    updated_at TEXT NOT NULL,
    PRIMARY KEY (service_name, depends_on)
);
CREATE INDEX IF NOT EXISTS idx_deps_depends_on ON service_dependencies(depends_on);

-- Health history for trend analysis
CREATE TABLE IF NOT EXISTS monitoring_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_name TEXT NOT NULL,
    status TEXT NOT NULL,
    error_rate REAL NOT NULL DEFAULT 0.0,
    latency_ms REAL NOT NULL DEFAULT 0.0,
    observed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_service ON monitoring_snapshots(service_name, observed_at DESC);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row and row[0] is not None else None
    if current is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info(f"Initialized trustcast schema v{SCHEMA_VERSION}")
    elif current > SCHEMA_VERSION:
        logger.warning(
            f"Database schema v{current} is newer than this build (v{SCHEMA_VERSION})"
        )
    conn.commit()
