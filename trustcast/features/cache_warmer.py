"""Prediction-driven cache warming.

Pre-populates failover, performance and cascade artifacts for services that
are forecast to fail, and entity data that a session touches most often.
The warmer only ever writes to the cache.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from trustcast.interactions import count_entity_access, normalize_interactions
from trustcast.logging_config import log_cache_warm
from trustcast.protocols import (
    CacheBackend,
    EntityStore,
    InteractionSource,
    UpstreamUnavailableError,
)
from trustcast.scoring import clamp
from trustcast.types import CacheWarmEntry, Prediction, PredictionType, WarmReport, utc_now

logger = logging.getLogger(__name__)

WARM_CONFIDENCE_THRESHOLD = 0.6
ACCESS_PATTERN_WINDOW = 50
ACCESS_PATTERN_TOP_N = 10

FAILOVER_TTL = 3600
HEALTH_TTL = 1800
STRATEGY_TTL = 3600
STRATEGY_ADVERTISED_TTL = 300
TEMPLATE_TTL = 900
DEPENDENCY_TTL = 1800
CIRCUIT_TTL = 1800
ENTITY_TTL = 3600

BASE_TTL = 3600
MIN_TTL = 300
MAX_TTL = 7200

STRATEGIES = ("failover", "performance", "cascade", "access-pattern")


def calculate_optimal_ttl(prediction: Prediction) -> int:
    """TTL scaled by confidence and urgency, clamped to [300, 7200] seconds."""
    ttf = prediction.time_to_failure_seconds
    urgency = max(0.5, 1 - ttf / 3600) if ttf is not None else 1.0
    return int(clamp(BASE_TTL * prediction.confidence * urgency, MIN_TTL, MAX_TTL))


class CacheWarmer:
    """Writes cache entries ahead of predicted failures and hot entities."""

    def __init__(
        self,
        cache: CacheBackend,
        interaction_source: Optional[InteractionSource] = None,
        entity_store: Optional[EntityStore] = None,
        storage=None,
        access_window: int = ACCESS_PATTERN_WINDOW,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self._cache = cache
        self._interactions = interaction_source
        self._entities = entity_store
        # Optional SQLiteStorage, used only to find an anchor's active sessions
        self._storage = storage
        self._access_window = access_window
        self._now = now_fn
        self._stats = {"passes": 0, "entries_written": 0, "entries_skipped": 0, "entities_warmed": 0}

    # === Prediction-driven warming ===

    def plan_entries(self, prediction: Prediction) -> List[CacheWarmEntry]:
        """Cache entries a prediction calls for; empty when it calls for none.

        Only active (unresolved, unexpired) predictions are warmed.
        """
        if prediction.confidence < WARM_CONFIDENCE_THRESHOLD:
            return []
        now = self._now()
        if not prediction.is_active(now):
            return []

        service = prediction.service_name
        warmed_at = now.timestamp()
        ptype = prediction.prediction_type

        if ptype is PredictionType.FAILURE:
            return [
                CacheWarmEntry(
                    key=f"failover:{service}:fallback",
                    payload={
                        "primaryService": service,
                        "fallbackStrategy": "degraded-mode",
                        "cacheHit": True,
                        "warmedAt": warmed_at,
                    },
                    ttl_seconds=FAILOVER_TTL,
                ),
                CacheWarmEntry(
                    key=f"health:{service}:status",
                    payload={
                        "status": "predicted-failure",
                        "predictionId": prediction.id,
                        "warmedAt": warmed_at,
                    },
                    ttl_seconds=HEALTH_TTL,
                ),
            ]

        if ptype is PredictionType.LATENCY:
            return [
                CacheWarmEntry(
                    key=f"strategy:{service}:caching",
                    payload={
                        "mode": "aggressive",
                        "ttl": STRATEGY_ADVERTISED_TTL,
                        "reason": "latency-prediction",
                        "predictionId": prediction.id,
                        "warmedAt": warmed_at,
                    },
                    ttl_seconds=STRATEGY_TTL,
                ),
                CacheWarmEntry(
                    key=f"template:{service}:response",
                    payload={"cached": True, "serviceUnavailable": False, "warmedAt": warmed_at},
                    ttl_seconds=TEMPLATE_TTL,
                ),
            ]

        if ptype is PredictionType.CASCADE:
            entries = [
                CacheWarmEntry(
                    key=f"dependencies:{affected}",
                    payload={
                        "hasCascadeRisk": True,
                        "sourceFailure": service,
                        "predictionId": prediction.id,
                        "warmedAt": warmed_at,
                    },
                    ttl_seconds=DEPENDENCY_TTL,
                )
                for affected in prediction.details.get("affected_services", [])
            ]
            entries.append(
                CacheWarmEntry(
                    key=f"circuit:{service}",
                    payload={"state": "half-open", "reason": "cascade-prediction", "warmedAt": warmed_at},
                    ttl_seconds=CIRCUIT_TTL,
                )
            )
            return entries

        # anomaly predictions have no warming strategy
        return []

    async def _write(self, entries: List[CacheWarmEntry]) -> None:
        await asyncio.gather(
            *(self._cache.put(e.key, e.payload, e.ttl_seconds) for e in entries)
        )

    async def warm_caches(self, predictions: List[Prediction]) -> WarmReport:
        """Warm cache entries for every qualifying prediction."""
        report = WarmReport()
        for prediction in predictions:
            entries = self.plan_entries(prediction)
            if not entries:
                report.skipped += 1
                continue
            await self._write(entries)
            report.entries.extend(entries)
            ptype = prediction.prediction_type.value
            report.by_type[ptype] = report.by_type.get(ptype, 0) + 1

        self._stats["passes"] += 1
        self._stats["entries_written"] += report.written
        self._stats["entries_skipped"] += report.skipped
        log_cache_warm("predictions", report.written, report.skipped)
        return report

    # === Access-pattern warming ===

    async def _session_ids(self, session_id: Optional[str], identity_anchor: Optional[str]) -> List[str]:
        if session_id:
            return [session_id]
        if identity_anchor and self._storage is not None:
            bindings = await asyncio.to_thread(
                self._storage.get_bindings_for_anchor, identity_anchor, True
            )
            return [b.session_id for b in bindings]
        return []

    async def warm_from_access_patterns(
        self,
        session_id: Optional[str] = None,
        identity_anchor: Optional[str] = None,
    ) -> WarmReport:
        """Warm the most-accessed entities of a session (or an anchor's sessions).

        Entities missing from the entity store count as misses, not errors.
        """
        report = WarmReport()
        if self._interactions is None or self._entities is None:
            return report

        # One window shared across all of the anchor's sessions
        interactions = []
        for sid in await self._session_ids(session_id, identity_anchor):
            remaining = self._access_window - len(interactions)
            if remaining <= 0:
                break
            try:
                raws = await self._interactions.get_session_interactions(sid, limit=remaining)
            except UpstreamUnavailableError as e:
                logger.warning(f"Interaction source unavailable for session {sid}: {e}")
                continue
            interactions.extend(normalize_interactions(raws or [])[-remaining:])

        warmed_at = self._now().timestamp()
        for entity_key, count in count_entity_access(interactions)[:ACCESS_PATTERN_TOP_N]:
            data = await self._entities.get_entity(entity_key)
            if not data:
                report.skipped += 1
                continue
            entry = CacheWarmEntry(
                key=f"entity:{entity_key}:data",
                payload={**data, "accessCount": count, "warmedAt": warmed_at},
                ttl_seconds=ENTITY_TTL,
            )
            await self._cache.put(entry.key, entry.payload, entry.ttl_seconds)
            report.entries.append(entry)

        if report.entries:
            report.by_type["entity"] = report.written
        self._stats["entities_warmed"] += report.written
        log_cache_warm("access_patterns", report.written, report.skipped)
        return report

    @staticmethod
    def calculate_optimal_ttl(prediction: Prediction) -> int:
        return calculate_optimal_ttl(prediction)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "engine": "prediction-driven",
            "strategies": list(STRATEGIES),
            **self._stats,
        }
