"""
Shared types for trustcast.

All record dataclasses live here. These are the shared vocabulary between
the ledger, the predictor, the warmer and the storage layer. The storage
layer persists them; the features compute them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

IdentityAnchor = str


# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexicographic order equal to chronological order,
    which the storage layer relies on for expiry comparisons.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# === Enums ===


class UnbindReason(str, Enum):
    """Closed set of reasons a session binding can end."""

    SESSION_COMPLETE = "session_complete"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TrustTrigger(str, Enum):
    """What caused a trust recalculation."""

    SESSION_COMPLETE = "session_complete"
    ANOMALY_DETECTED = "anomaly_detected"
    ADMIN_OVERRIDE = "admin_override"


class ServiceStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class DependencyType(str, Enum):
    CRITICAL = "critical"
    OPTIONAL = "optional"


class PredictionType(str, Enum):
    FAILURE = "failure"
    LATENCY = "latency"
    ANOMALY = "anomaly"
    CASCADE = "cascade"


class Outcome(str, Enum):
    """Explicit outcome of a single interaction."""

    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


# === Errors ===


class VersionConflictError(Exception):
    """Raised when a record's version doesn't match the expected version.

    This indicates a concurrent modification - another invocation updated
    the record between when we read it and when we tried to save our changes.
    """

    def __init__(self, table: str, record_id: str, expected_version: int, actual_version: int):
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {table}/{record_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


# === Session & identity ===


@dataclass(frozen=True)
class SessionContext:
    """Caller-supplied fingerprint components for a session."""

    user_id: Optional[str] = None
    platform: Optional[str] = None
    fingerprint: Optional[str] = None
    ip_hash: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "SessionContext":
        """Build a context from a dict, accepting camelCase legacy keys."""
        if not data:
            return cls()

        def pick(*keys: str) -> Optional[str]:
            for key in keys:
                value = data.get(key)
                if value:
                    return str(value)
            return None

        return cls(
            user_id=pick("user_id", "userId"),
            platform=pick("platform"),
            fingerprint=pick("fingerprint", "client_fingerprint"),
            ip_hash=pick("ip_hash", "ipHash"),
        )


@dataclass
class SessionBinding:
    """Temporal link from an ephemeral session id to an identity anchor."""

    id: str
    session_id: str
    identity_anchor: IdentityAnchor
    platform: str = "unknown"
    client_fingerprint: str = "unknown"
    bound_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    unbound_at: Optional[datetime] = None
    unbind_reason: Optional[str] = None
    interactions_count: int = 0
    decisions_count: int = 0
    entities_discovered: int = 0
    session_risk_score: float = 0.0
    session_success_rate: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.unbound_at is None


@dataclass
class ExperienceProfile:
    """Accumulated experience and trust state for one identity anchor."""

    identity_anchor: IdentityAnchor
    total_interactions: int = 0
    total_decisions: int = 0
    total_entities: int = 0
    current_trust_level: int = 3
    trust_score: float = 50.0
    expertise_domains: Set[str] = field(default_factory=set)
    success_rate: float = 0.0
    risk_score: float = 0.0
    anomaly_count: int = 0
    last_anomaly_at: Optional[datetime] = None
    oldest_interaction: Optional[datetime] = None
    newest_interaction: Optional[datetime] = None
    trust_last_calculated: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1


@dataclass
class TrustEvolutionRecord:
    """Immutable audit entry for a trust score/level change."""

    id: str
    identity_anchor: IdentityAnchor
    previous_trust_level: int
    new_trust_level: int
    previous_trust_score: float
    new_trust_score: float
    change_trigger: str
    change_factors: Dict[str, Any]
    content_hash: str
    changed_at: Optional[datetime] = None


@dataclass(frozen=True)
class TrustBreakdown:
    """Sub-scores behind a trust score, kept for auditability."""

    volume: float
    success: float
    anomaly: float
    session_quality: float
    recency: float
    weights: Tuple[Tuple[str, float], ...]
    score: float

    def contributions(self) -> Dict[str, float]:
        subs = self.as_sub_scores()
        return {name: round(subs[name] * weight, 4) for name, weight in self.weights}

    def as_sub_scores(self) -> Dict[str, float]:
        return {
            "volume": self.volume,
            "success": self.success,
            "anomalyPenalty": self.anomaly,
            "sessionQuality": self.session_quality,
            "recency": self.recency,
        }

    def to_factors(self) -> Dict[str, Any]:
        """Structured change_factors payload for the evolution log."""
        subs = self.as_sub_scores()
        contributions = self.contributions()
        return {
            name: {
                "sub_score": round(subs[name], 4),
                "weight": weight,
                "contribution": contributions[name],
            }
            for name, weight in self.weights
        } | {"score": self.score}


@dataclass(frozen=True)
class TrustStanding:
    """Trust level and score as exposed to access-control layers."""

    identity_anchor: IdentityAnchor
    trust_level: int
    trust_score: float
    level_name: str
    source: str = "profile"


# === Interactions ===


@dataclass(frozen=True)
class EntityRef:
    type: str
    id: str

    @property
    def key(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class Interaction:
    """A single session interaction with an explicit outcome."""

    kind: str = "interaction"
    outcome: Outcome = Outcome.UNKNOWN
    entities: Tuple[EntityRef, ...] = ()
    domain: Optional[str] = None

    @property
    def is_decision(self) -> bool:
        return self.kind == "decision"


# === Telemetry & predictions ===


@dataclass(frozen=True)
class ServiceHealthSnapshot:
    service_name: str
    status: ServiceStatus
    error_rate: float = 0.0
    latency_ms: float = 0.0
    observed_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ServiceHealthSnapshot":
        """Validate and build a snapshot; raises ValueError on malformed input."""
        name = data.get("service_name") or data.get("name")
        if not name:
            raise ValueError("snapshot is missing service_name")
        raw_status = data.get("status")
        if raw_status is None:
            raise ValueError(f"snapshot for {name} is missing status")
        try:
            status = ServiceStatus(str(raw_status))
        except ValueError:
            raise ValueError(f"snapshot for {name} has unknown status {raw_status!r}")
        try:
            error_rate = float(data.get("error_rate") or 0.0)
            latency_ms = float(data.get("latency_ms") or 0.0)
        except (TypeError, ValueError):
            raise ValueError(f"snapshot for {name} has non-numeric metrics")
        if not 0.0 <= error_rate <= 1.0:
            raise ValueError(f"snapshot for {name} has error_rate outside [0, 1]")
        observed = data.get("observed_at")
        if isinstance(observed, str):
            observed = parse_datetime(observed)
        return cls(
            service_name=str(name),
            status=status,
            error_rate=error_rate,
            latency_ms=latency_ms,
            observed_at=observed,
        )


@dataclass(frozen=True)
class DependencyEdge:
    """Edge A->B: service_name A depends on depends_on B."""

    service_name: str
    depends_on: str
    dependency_type: DependencyType = DependencyType.CRITICAL
    weight: float = 1.0


@dataclass(frozen=True)
class AnomalyReport:
    service: str
    anomaly_type: str


@dataclass
class Prediction:
    id: str
    service_name: str
    prediction_type: PredictionType
    confidence: float
    time_to_failure_seconds: Optional[int]
    details: Dict[str, Any]
    created_at: datetime
    expires_at: datetime
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return self.resolved_at is None and self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service_name": self.service_name,
            "prediction_type": self.prediction_type.value,
            "confidence": self.confidence,
            "time_to_failure_seconds": self.time_to_failure_seconds,
            "details": self.details,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "acknowledged_at": to_iso(self.acknowledged_at),
            "resolved_at": to_iso(self.resolved_at),
        }


@dataclass(frozen=True)
class CacheWarmEntry:
    key: str
    payload: Dict[str, Any]
    ttl_seconds: int


@dataclass
class WarmReport:
    """Outcome of one warming pass."""

    entries: List[CacheWarmEntry] = field(default_factory=list)
    skipped: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)

    @property
    def written(self) -> int:
        return len(self.entries)


# === Commit results ===


@dataclass
class ExperienceCommitted:
    session_id: str
    identity_anchor: IdentityAnchor
    metrics: Dict[str, Any]
    trust_changed: bool = False
    committed: bool = True


@dataclass
class ExperienceCommitFailed:
    """Non-fatal commit failure; the session has still been unbound."""

    session_id: str
    identity_anchor: Optional[IdentityAnchor]
    reason: str
    attempts: int = 0
    committed: bool = False
