"""
Pytest fixtures and test configuration for trustcast tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from trustcast.cache import MemoryCache, TTLCache
from trustcast.features.cache_warmer import CacheWarmer
from trustcast.features.failure_prediction import FailurePredictor
from trustcast.features.trust_ledger import TrustLedger
from trustcast.protocols import IdentityMintError, UpstreamUnavailableError
from trustcast.storage import SQLiteStorage
from trustcast.types import AnomalyReport

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock shared by storage, cache and features."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMinter:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def mint(self, entity_context):
        self.calls.append(dict(entity_context))
        if self.fail:
            raise IdentityMintError("identity service unavailable")
        return f"anchor-{len(self.calls):03d}"


class FakeTelemetry:
    def __init__(self, snapshots=None, histories: Optional[Dict[str, List[float]]] = None):
        self.snapshots = list(snapshots or [])
        self.histories = histories or {}
        self.fail = False

    async def current_snapshots(self):
        if self.fail:
            raise UpstreamUnavailableError("telemetry offline")
        return list(self.snapshots)

    async def history(self, service_name, limit):
        if self.fail:
            raise UpstreamUnavailableError("telemetry offline")
        return self.histories.get(service_name, [])[-limit:]


class FakeAnomalyDetector:
    def __init__(self, reports=None, fail: bool = False):
        self.reports = [AnomalyReport(service=s, anomaly_type=t) for s, t in (reports or [])]
        self.fail = fail

    async def detect(self):
        if self.fail:
            raise UpstreamUnavailableError("detector offline")
        return list(self.reports)


class FakeInteractionSource:
    def __init__(self, sessions: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.sessions = sessions or {}
        self.requests: List[tuple] = []

    async def get_session_interactions(self, session_id, limit=None):
        self.requests.append((session_id, limit))
        records = self.sessions.get(session_id, [])
        return records[-limit:] if limit else list(records)


class FakeEntityStore:
    def __init__(self, entities: Optional[Dict[str, Dict[str, Any]]] = None):
        self.entities = entities or {}

    async def get_entity(self, entity_key):
        return self.entities.get(entity_key)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def storage(tmp_path, clock):
    store = SQLiteStorage(tmp_path / "trustcast.db", now_fn=clock)
    yield store
    store.close()


@pytest.fixture
def cache(clock):
    return MemoryCache(TTLCache(clock=clock.timestamp))


@pytest.fixture
def minter():
    return FakeMinter()


@pytest.fixture
def interaction_source():
    return FakeInteractionSource()


@pytest.fixture
def ledger(storage, cache, minter, interaction_source, clock):
    return TrustLedger(storage, cache, minter, interaction_source=interaction_source, now_fn=clock)


@pytest.fixture
def telemetry():
    return FakeTelemetry()


@pytest.fixture
def predictor(storage, cache, telemetry, clock):
    return FailurePredictor(storage, cache, history_source=telemetry, now_fn=clock)


@pytest.fixture
def entity_store():
    return FakeEntityStore()


@pytest.fixture
def warmer(cache, interaction_source, entity_store, storage, clock):
    return CacheWarmer(
        cache,
        interaction_source=interaction_source,
        entity_store=entity_store,
        storage=storage,
        now_fn=clock,
    )
