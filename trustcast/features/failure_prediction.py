"""Failure prediction and cascade analysis.

Turns service health snapshots and the dependency graph into forecasts:

- failure:  degraded services, confidence from error rate
- latency:  slow services whose recent latency trends upward (OLS over <= 20 samples)
- anomaly:  services the anomaly detector flags
- cascade:  degraded/down services with dependents in the graph

Each prediction is persisted individually and the high-confidence ones are
mirrored into the cache for fast lookup.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from trustcast.logging_config import log_prediction
from trustcast.protocols import (
    AnomalyDetector,
    CacheBackend,
    StorageError,
    TelemetrySource,
    UpstreamUnavailableError,
)
from trustcast.scoring import linear_regression
from trustcast.storage import SQLiteStorage
from trustcast.types import (
    AnomalyReport,
    DependencyEdge,
    DependencyType,
    Prediction,
    PredictionType,
    ServiceHealthSnapshot,
    ServiceStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

DependencyMap = Dict[str, List[DependencyEdge]]

# Expiry windows per prediction type
PREDICTION_LIFETIMES = {
    PredictionType.FAILURE: timedelta(hours=24),
    PredictionType.LATENCY: timedelta(hours=6),
    PredictionType.ANOMALY: timedelta(hours=2),
    PredictionType.CASCADE: timedelta(hours=1),
}

MAX_CONFIDENCE = 0.95
FAILURE_BASE_CONFIDENCE = 0.65
ANOMALY_CONFIDENCE = 0.7
CACHE_CONFIDENCE_THRESHOLD = 0.7
LATENCY_THRESHOLD_MS = 500
LATENCY_WINDOW = 20
LATENCY_MIN_SAMPLES = 5
LATENCY_LOOKAHEAD_STEPS = 5
CASCADE_TIME_TO_FAILURE = 300


# =============================================================================
# Pure helpers
# =============================================================================


def make_prediction_id(
    prediction_type: PredictionType | str,
    service_name: str,
    created_at: datetime,
    bucket_seconds: int = 60,
) -> str:
    """Deterministic id: one per (type, service, time bucket)."""
    bucket = int(created_at.timestamp()) // max(1, bucket_seconds) * max(1, bucket_seconds)
    return f"pred-{PredictionType(prediction_type).value}-{service_name}-{bucket}"


def estimate_time_to_failure(error_rate: float, latency_ms: float) -> int:
    """Seconds until expected failure, from the current error rate and latency."""
    if error_rate > 0.5:
        return 300
    if error_rate > 0.3:
        return 900
    if error_rate > 0.1:
        return 1800
    if latency_ms > 2000:
        return 1800
    return 3600


def build_dependency_map(edges: Iterable[DependencyEdge]) -> DependencyMap:
    """Group edges by the dependent service."""
    dep_map: DependencyMap = defaultdict(list)
    for edge in edges:
        dep_map[edge.service_name].append(edge)
    return dict(dep_map)


def find_dependents(service_name: str, dep_map: Mapping[str, Sequence[DependencyEdge]]) -> List[str]:
    """Services with a direct edge onto ``service_name``."""
    return [
        dependent
        for dependent, edges in dep_map.items()
        if any(e.depends_on == service_name for e in edges)
    ]


def calculate_cascade_confidence(
    service_name: str,
    dependents: Sequence[str],
    dep_map: Mapping[str, Sequence[DependencyEdge]],
) -> float:
    """min(0.95, critical share of dependents + 0.3 x mean edge weight)."""
    if not dependents:
        return 0.0
    total_weight = 0.0
    critical = 0
    for dependent in dependents:
        edge = next((e for e in dep_map.get(dependent, ()) if e.depends_on == service_name), None)
        if edge is None:
            continue
        total_weight += edge.weight
        if DependencyType(edge.dependency_type) is DependencyType.CRITICAL:
            critical += 1
    base = critical / len(dependents)
    boost = (total_weight / len(dependents)) * 0.3
    return min(MAX_CONFIDENCE, base + boost)


def calculate_cascade_depth(
    service_name: str,
    dep_map: Mapping[str, Sequence[DependencyEdge]],
    visited: Optional[set] = None,
) -> int:
    """Levels of dependents reachable from a service.

    The visited set is shared across the whole traversal, so cyclic graphs
    terminate: a revisited node contributes 0, a node with no dependents 1.
    """
    if visited is None:
        visited = set()
    if service_name in visited:
        return 0
    visited.add(service_name)

    dependents = find_dependents(service_name, dep_map)
    if not dependents:
        return 1
    return 1 + max(calculate_cascade_depth(d, dep_map, visited) for d in dependents)


def _coerce_snapshots(
    snapshots: Iterable[ServiceHealthSnapshot | Mapping[str, Any]],
) -> List[ServiceHealthSnapshot]:
    valid = []
    for raw in snapshots or ():
        if isinstance(raw, ServiceHealthSnapshot):
            valid.append(raw)
            continue
        if not isinstance(raw, Mapping):
            logger.warning(f"Skipping malformed snapshot of type {type(raw).__name__}")
            continue
        try:
            valid.append(ServiceHealthSnapshot.from_mapping(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed snapshot: {e}")
    return valid


# =============================================================================
# Predictor
# =============================================================================


class FailurePredictor:
    """Generates, stores and serves service failure predictions."""

    def __init__(
        self,
        storage: SQLiteStorage,
        cache: CacheBackend,
        anomaly_detector: Optional[AnomalyDetector] = None,
        history_source: Optional[TelemetrySource] = None,
        bucket_seconds: int = 60,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self._storage = storage
        self._cache = cache
        self._anomalies = anomaly_detector
        self._history = history_source
        self._bucket_seconds = bucket_seconds
        self._now = now_fn

    def _new_prediction(
        self,
        prediction_type: PredictionType,
        service_name: str,
        confidence: float,
        time_to_failure: Optional[int],
        details: Dict[str, Any],
        now: datetime,
    ) -> Prediction:
        return Prediction(
            id=make_prediction_id(prediction_type, service_name, now, self._bucket_seconds),
            service_name=service_name,
            prediction_type=prediction_type,
            confidence=round(confidence, 4),
            time_to_failure_seconds=time_to_failure,
            details=details,
            created_at=now,
            expires_at=now + PREDICTION_LIFETIMES[prediction_type],
        )

    # === Analysis ===

    async def analyze_predictions(
        self,
        snapshots: Iterable[ServiceHealthSnapshot | Mapping[str, Any]],
        dependency_graph: Optional[Iterable[DependencyEdge] | DependencyMap] = None,
    ) -> List[Prediction]:
        """Run every predictor over the current snapshots.

        Args:
            snapshots: Current health per service. Malformed entries are skipped.
            dependency_graph: Edges (or an already-built map). None loads the
                stored graph; an empty graph yields no cascade predictions.
        """
        now = self._now()
        services = _coerce_snapshots(snapshots)

        predictions: List[Prediction] = []
        for snap in services:
            if snap.status is ServiceStatus.DEGRADED:
                predictions.append(self._predict_failure(snap, now))
            if snap.latency_ms > LATENCY_THRESHOLD_MS:
                latency = await self._predict_latency(snap, now)
                if latency is not None:
                    predictions.append(latency)

        predictions.extend(await self._predict_anomalies(services, now))

        if dependency_graph is None:
            dep_map = await self.load_dependency_graph()
        elif isinstance(dependency_graph, Mapping):
            dep_map = dict(dependency_graph)
        else:
            dep_map = build_dependency_map(dependency_graph)
        predictions.extend(self._predict_cascades(services, dep_map, now))

        for prediction in predictions:
            await self._persist(prediction, now)

        logger.info(
            f"Analyzed {len(services)} services, generated {len(predictions)} predictions"
        )
        return predictions

    def _predict_failure(self, snap: ServiceHealthSnapshot, now: datetime) -> Prediction:
        confidence = min(MAX_CONFIDENCE, FAILURE_BASE_CONFIDENCE + snap.error_rate * 0.3)
        return self._new_prediction(
            PredictionType.FAILURE,
            snap.service_name,
            confidence,
            estimate_time_to_failure(snap.error_rate, snap.latency_ms),
            {
                "current_status": snap.status.value,
                "error_rate": snap.error_rate,
                "latency": snap.latency_ms,
                "trend": "declining",
                "reasoning": "Service health degraded with increasing error rate",
            },
            now,
        )

    async def _latency_samples(self, service_name: str) -> Optional[List[float]]:
        try:
            if self._history is not None:
                samples = await self._history.history(service_name, LATENCY_WINDOW)
            else:
                samples = await asyncio.to_thread(
                    self._storage.get_recent_latencies, service_name, LATENCY_WINDOW
                )
        except (UpstreamUnavailableError, StorageError) as e:
            logger.warning(f"Latency history unavailable for {service_name}: {e}")
            return None
        return [float(s) for s in samples][-LATENCY_WINDOW:]

    async def _predict_latency(
        self, snap: ServiceHealthSnapshot, now: datetime
    ) -> Optional[Prediction]:
        samples = await self._latency_samples(snap.service_name)
        if samples is None or len(samples) < LATENCY_MIN_SAMPLES:
            return None

        trend = linear_regression(samples)
        if trend.slope <= 0:
            return None

        predicted = samples[-1] + trend.slope * LATENCY_LOOKAHEAD_STEPS
        return self._new_prediction(
            PredictionType.LATENCY,
            snap.service_name,
            trend.confidence,
            None,
            {
                "current_latency": snap.latency_ms,
                "predicted_latency": round(predicted, 2),
                "slope": round(trend.slope, 4),
                "samples": len(samples),
                "reasoning": "Latency trending upward, performance degradation likely",
            },
            now,
        )

    async def _predict_anomalies(
        self, services: Sequence[ServiceHealthSnapshot], now: datetime
    ) -> List[Prediction]:
        if self._anomalies is None or not services:
            return []
        try:
            reports: List[AnomalyReport] = list(await self._anomalies.detect())
        except UpstreamUnavailableError as e:
            logger.warning(f"Anomaly detector unavailable, skipping anomaly predictions: {e}")
            return []

        by_service: Dict[str, List[str]] = defaultdict(list)
        for report in reports:
            by_service[report.service].append(report.anomaly_type)

        predictions = []
        for snap in services:
            kinds = by_service.get(snap.service_name)
            if not kinds:
                continue
            predictions.append(
                self._new_prediction(
                    PredictionType.ANOMALY,
                    snap.service_name,
                    ANOMALY_CONFIDENCE,
                    None,
                    {
                        "anomaly_count": len(kinds),
                        "anomalies": kinds,
                        "reasoning": "Multiple anomalies detected, potential incident",
                    },
                    now,
                )
            )
        return predictions

    def _predict_cascades(
        self,
        services: Sequence[ServiceHealthSnapshot],
        dep_map: DependencyMap,
        now: datetime,
    ) -> List[Prediction]:
        if not dep_map:
            return []
        predictions = []
        for snap in services:
            if snap.status not in (ServiceStatus.DEGRADED, ServiceStatus.DOWN):
                continue
            dependents = find_dependents(snap.service_name, dep_map)
            if not dependents:
                continue
            predictions.append(
                self._new_prediction(
                    PredictionType.CASCADE,
                    snap.service_name,
                    calculate_cascade_confidence(snap.service_name, dependents, dep_map),
                    CASCADE_TIME_TO_FAILURE,
                    {
                        "failing_service": snap.service_name,
                        "affected_services": dependents,
                        "cascade_depth": calculate_cascade_depth(snap.service_name, dep_map),
                        "reasoning": (
                            f"{snap.service_name} failure may cascade to "
                            f"{len(dependents)} dependent services"
                        ),
                    },
                    now,
                )
            )
        return predictions

    async def _persist(self, prediction: Prediction, now: datetime) -> None:
        stored = True
        try:
            await asyncio.to_thread(self._storage.save_prediction, prediction)
        except (StorageError, sqlite3.Error) as e:
            stored = False
            logger.error(f"Failed to store prediction {prediction.id}: {e}")
        log_prediction(
            prediction.id,
            prediction.service_name,
            prediction.prediction_type.value,
            prediction.confidence,
            stored,
        )

        if prediction.confidence > CACHE_CONFIDENCE_THRESHOLD:
            ttl = int((prediction.expires_at - now).total_seconds())
            try:
                await self._cache.put(
                    self.cache_key(prediction.service_name, prediction.prediction_type),
                    prediction.to_dict(),
                    ttl,
                )
            except Exception as e:
                logger.error(f"Failed to cache prediction {prediction.id}: {e}")

    # === Queries & lifecycle ===

    @staticmethod
    def cache_key(service_name: str, prediction_type: PredictionType | str) -> str:
        return f"prediction:{service_name}:{PredictionType(prediction_type).value}"

    async def get_cached_prediction(
        self, service_name: str, prediction_type: PredictionType | str
    ) -> Optional[Dict[str, Any]]:
        return await self._cache.get(self.cache_key(service_name, prediction_type))

    async def get_active_predictions(
        self, service_name: Optional[str] = None, limit: int = 50
    ) -> List[Prediction]:
        return await asyncio.to_thread(self._storage.get_active_predictions, service_name, limit)

    async def acknowledge_prediction(self, prediction_id: str) -> bool:
        return await asyncio.to_thread(self._storage.acknowledge_prediction, prediction_id)

    async def resolve_prediction(self, prediction_id: str) -> bool:
        resolved = await asyncio.to_thread(self._storage.resolve_prediction, prediction_id)
        if resolved:
            logger.info(f"Resolved prediction {prediction_id}")
        return resolved

    async def get_stats(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._storage.get_prediction_stats)

    # === Telemetry & topology ===

    async def record_snapshots(
        self, snapshots: Iterable[ServiceHealthSnapshot | Mapping[str, Any]]
    ) -> int:
        """Append snapshots to the latency history used for trend analysis."""
        valid = _coerce_snapshots(snapshots)
        if not valid:
            return 0
        return await asyncio.to_thread(self._storage.record_snapshots, valid)

    async def load_dependency_graph(self) -> DependencyMap:
        edges = await asyncio.to_thread(self._storage.get_dependencies)
        return build_dependency_map(edges)

    async def set_dependencies(self, edges: Iterable[DependencyEdge]) -> int:
        edges = list(edges)
        for edge in edges:
            if not 0.0 <= edge.weight <= 1.0:
                raise ValueError(
                    f"Dependency weight for {edge.service_name}->{edge.depends_on} "
                    f"must be within [0, 1]"
                )
            if edge.service_name == edge.depends_on:
                raise ValueError(f"Service {edge.service_name} cannot depend on itself")
        return await asyncio.to_thread(self._storage.upsert_dependencies, edges)
