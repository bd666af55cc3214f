"""Engine facade: wires the ledger, predictor and warmer from settings."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from trustcast.cache import MemoryCache
from trustcast.config import Settings, get_settings
from trustcast.features.cache_warmer import CacheWarmer
from trustcast.features.failure_prediction import FailurePredictor
from trustcast.features.trust_ledger import TrustLedger
from trustcast.identity import HttpIdentityMinter
from trustcast.logging_config import setup_logging
from trustcast.protocols import (
    AnomalyDetector,
    CacheBackend,
    EntityStore,
    IdentityMinter,
    InteractionSource,
    TelemetrySource,
    UpstreamUnavailableError,
)
from trustcast.storage import SQLiteStorage
from trustcast.types import Prediction, WarmReport, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one prediction tick."""

    predictions: List[Prediction] = field(default_factory=list)
    warm_report: WarmReport = field(default_factory=WarmReport)
    snapshots_seen: int = 0
    telemetry_available: bool = True


class TrustcastEngine:
    """Owns the single storage and cache instances and the three features."""

    def __init__(
        self,
        storage: SQLiteStorage,
        cache: CacheBackend,
        minter: IdentityMinter,
        telemetry: Optional[TelemetrySource] = None,
        anomaly_detector: Optional[AnomalyDetector] = None,
        interaction_source: Optional[InteractionSource] = None,
        entity_store: Optional[EntityStore] = None,
        settings: Optional[Settings] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.storage = storage
        self.cache = cache
        self.telemetry = telemetry

        self.ledger = TrustLedger(
            storage,
            cache,
            minter,
            interaction_source=interaction_source,
            session_risk_window=settings.session_risk_window,
            now_fn=now_fn,
        )
        self.predictor = FailurePredictor(
            storage,
            cache,
            anomaly_detector=anomaly_detector,
            history_source=telemetry,
            bucket_seconds=settings.prediction_bucket_seconds,
            now_fn=now_fn,
        )
        self.warmer = CacheWarmer(
            cache,
            interaction_source=interaction_source,
            entity_store=entity_store,
            storage=storage,
            access_window=settings.interaction_window,
            now_fn=now_fn,
        )

    async def run_prediction_cycle(self) -> CycleResult:
        """Pull telemetry, forecast, and warm the cache ahead of failures."""
        result = CycleResult()
        if self.telemetry is None:
            logger.warning("No telemetry source configured; skipping prediction cycle")
            result.telemetry_available = False
            return result

        try:
            snapshots = list(await self.telemetry.current_snapshots())
        except UpstreamUnavailableError as e:
            logger.warning(f"Telemetry unavailable, skipping prediction cycle: {e}")
            result.telemetry_available = False
            return result

        result.snapshots_seen = len(snapshots)
        await self.predictor.record_snapshots(snapshots)
        graph = await self.predictor.load_dependency_graph()
        result.predictions = await self.predictor.analyze_predictions(snapshots, graph)
        result.warm_report = await self.warmer.warm_caches(result.predictions)
        logger.info(
            f"Prediction cycle: {len(result.predictions)} predictions, "
            f"{result.warm_report.written} cache entries warmed"
        )
        return result

    def close(self) -> None:
        self.storage.close()


def create_engine(
    settings: Optional[Settings] = None,
    minter: Optional[IdentityMinter] = None,
    **collaborators,
) -> TrustcastEngine:
    """Build an engine from settings with the default store, cache and minter."""
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    storage = SQLiteStorage(settings.db_path)
    cache = MemoryCache()
    if minter is None:
        minter = HttpIdentityMinter(
            settings.identity_service_url,
            token=settings.identity_service_token,
            timeout=settings.identity_timeout_seconds,
        )
    return TrustcastEngine(storage, cache, minter, settings=settings, **collaborators)
