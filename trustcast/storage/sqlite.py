"""SQLite-backed experience store.

SQLiteStorage owns the connection lifecycle and delegates each aggregate to
its CRUD module. All methods are synchronous; the async features call them
through ``asyncio.to_thread``.
"""

import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from trustcast.protocols import StorageError
from trustcast.types import (
    DependencyEdge,
    ExperienceProfile,
    Prediction,
    ServiceHealthSnapshot,
    SessionBinding,
    TrustEvolutionRecord,
    UnbindReason,
    to_iso,
    utc_now,
)

from . import bindings_crud, predictions_crud, profiles_crud, topology_crud
from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)


class SQLiteStorage:
    """SQLite-based local storage for trustcast.

    Features:
    - Zero-config local storage
    - One short-lived connection per operation (WAL, busy timeout)
    - Optimistic concurrency on experience profiles
    """

    def __init__(self, db_path: Optional[Path] = None, now_fn=None):
        self.db_path = self._resolve_db_path(db_path)
        self._now_fn = now_fn or utc_now
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @staticmethod
    def _resolve_db_path(db_path: Optional[Path]) -> Path:
        if db_path is None:
            from trustcast.config import get_settings

            db_path = get_settings().db_path
        return Path(db_path).expanduser().resolve()

    def _now(self) -> str:
        """Current UTC time as a fixed-width ISO string."""
        return to_iso(self._now_fn())

    def _get_conn(self) -> sqlite3.Connection:
        """Open a configured connection. Prefer the _connect() context manager."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - sqlite3 errors re-raised as StorageError
        - Connection close in all cases
        """
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            init_db(conn)

    def close(self) -> None:
        """Connections are per-operation; kept for API symmetry."""
        pass

    def count(self, table: str) -> int:
        table = validate_table_name(table)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # === Experience profiles ===

    def ensure_profile(self, identity_anchor: str) -> bool:
        return profiles_crud.ensure_profile(self._connect, identity_anchor, self._now())

    def get_profile(self, identity_anchor: str) -> Optional[ExperienceProfile]:
        return profiles_crud.get_profile(self._connect, identity_anchor)

    def update_profile(
        self, profile: ExperienceProfile, expected_version: Optional[int] = None
    ) -> ExperienceProfile:
        return profiles_crud.update_profile(self._connect, profile, self._now(), expected_version)

    def apply_trust_change(
        self,
        profile: ExperienceProfile,
        record: TrustEvolutionRecord,
        expected_version: Optional[int] = None,
    ) -> ExperienceProfile:
        return profiles_crud.apply_trust_change(
            self._connect, profile, record, self._now(), expected_version
        )

    def get_trust_history(self, identity_anchor: str, limit: int = 100) -> List[TrustEvolutionRecord]:
        return profiles_crud.get_trust_history(self._connect, identity_anchor, limit)

    def count_trust_history(self, identity_anchor: str) -> int:
        return profiles_crud.count_trust_history(self._connect, identity_anchor)

    # === Session bindings ===

    def get_active_binding(self, session_id: str) -> Optional[SessionBinding]:
        return bindings_crud.get_active_binding(self._connect, session_id)

    def create_binding(
        self,
        session_id: str,
        identity_anchor: str,
        platform: str = "unknown",
        client_fingerprint: str = "unknown",
    ) -> SessionBinding:
        return bindings_crud.create_binding(
            self._connect, session_id, identity_anchor, platform, client_fingerprint, self._now()
        )

    def touch_binding(self, session_id: str) -> bool:
        return bindings_crud.touch_binding(self._connect, session_id, self._now())

    def find_anchor_by_user(self, user_id: str) -> Optional[str]:
        return bindings_crud.find_anchor_by_user(self._connect, user_id)

    def find_anchor_by_fingerprint(self, client_fingerprint: str) -> Optional[str]:
        return bindings_crud.find_anchor_by_fingerprint(self._connect, client_fingerprint)

    def increment_metric(self, session_id: str, metric: str, amount: int = 1) -> bool:
        return bindings_crud.increment_metric(
            self._connect, session_id, metric, amount, self._now()
        )

    def record_interaction_counts(
        self, session_id: str, interactions: int, decisions: int, entities: int
    ) -> bool:
        return bindings_crud.record_interaction_counts(
            self._connect, session_id, interactions, decisions, entities, self._now()
        )

    def set_session_risk(self, session_id: str, risk_score: float) -> bool:
        return bindings_crud.set_session_risk(self._connect, session_id, risk_score)

    def finalize_session_metrics(
        self,
        binding_id: str,
        interactions: int,
        decisions: int,
        entities: int,
        success_rate: float,
    ) -> None:
        bindings_crud.finalize_session_metrics(
            self._connect, binding_id, interactions, decisions, entities, success_rate
        )

    def unbind(self, session_id: str, reason: UnbindReason | str) -> bool:
        return bindings_crud.unbind(self._connect, session_id, reason, self._now())

    def get_bindings_for_anchor(
        self, identity_anchor: str, active_only: bool = False, limit: int = 100
    ) -> List[SessionBinding]:
        return bindings_crud.get_bindings_for_anchor(
            self._connect, identity_anchor, active_only, limit
        )

    def average_session_risk(self, identity_anchor: str, limit: int = 10) -> Optional[float]:
        return bindings_crud.average_session_risk(self._connect, identity_anchor, limit)

    # === Predictions ===

    def save_prediction(self, prediction: Prediction) -> str:
        return predictions_crud.save_prediction(self._connect, prediction)

    def get_prediction(self, prediction_id: str) -> Optional[Prediction]:
        return predictions_crud.get_prediction(self._connect, prediction_id)

    def get_active_predictions(
        self, service_name: Optional[str] = None, limit: int = 50
    ) -> List[Prediction]:
        return predictions_crud.get_active_predictions(
            self._connect, self._now(), service_name, limit
        )

    def acknowledge_prediction(self, prediction_id: str) -> bool:
        return predictions_crud.mark_acknowledged(self._connect, prediction_id, self._now())

    def resolve_prediction(self, prediction_id: str) -> bool:
        return predictions_crud.mark_resolved(self._connect, prediction_id, self._now())

    def get_prediction_stats(self) -> Dict[str, Any]:
        return predictions_crud.get_prediction_stats(self._connect, self._now())

    # === Topology & telemetry history ===

    def upsert_dependencies(self, edges: Iterable[DependencyEdge]) -> int:
        return topology_crud.upsert_dependencies(self._connect, edges, self._now())

    def delete_dependency(self, service_name: str, depends_on: str) -> bool:
        return topology_crud.delete_dependency(self._connect, service_name, depends_on)

    def get_dependencies(self) -> List[DependencyEdge]:
        return topology_crud.get_dependencies(self._connect)

    def record_snapshots(self, snapshots: Iterable[ServiceHealthSnapshot]) -> int:
        return topology_crud.record_snapshots(self._connect, snapshots, self._now())

    def get_recent_latencies(self, service_name: str, limit: int = 20) -> List[float]:
        return topology_crud.get_recent_latencies(self._connect, service_name, limit)
