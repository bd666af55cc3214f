"""
trustcast Protocol Definitions
==============================

Interface contracts for the collaborators the engine calls but does not own.

Collaborators and their roles:
- IdentityMinter:    Mints durable identity anchors. Never bypassed.
- TelemetrySource:   Current service health plus a rolling latency history.
- AnomalyDetector:   Reports anomalies for the current window.
- InteractionSource: Session interaction records (loosely shaped dicts).
- EntityStore:       Backing data for entities referenced by interactions.
- CacheBackend:      Key-value cache for warmed entries and short lookups.

Error handling philosophy:
- Identity minting failures raise IdentityMintError and propagate
- Telemetry/anomaly/interaction failures raise UpstreamUnavailableError;
  the caller skips the affected predictor instead of failing the analysis
- Storage failures raise StorageError
- Invalid arguments raise ValueError
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from trustcast.types import AnomalyReport, ServiceHealthSnapshot

# =============================================================================
# ERRORS
# =============================================================================


class TrustcastError(Exception):
    """Base for all trustcast errors."""

    pass


class StorageError(TrustcastError):
    """Raised by the experience store on persistence failures."""

    pass


class IdentityMintError(TrustcastError):
    """Raised when the identity service cannot mint an anchor.

    Fatal to the calling operation: anchors are never fabricated locally.
    """

    pass


class UpstreamUnavailableError(TrustcastError):
    """Raised when a telemetry-side collaborator cannot answer."""

    pass


# =============================================================================
# COLLABORATORS
# =============================================================================


@runtime_checkable
class IdentityMinter(Protocol):
    async def mint(self, entity_context: Mapping[str, Any]) -> str:
        """Mint a new identity anchor for the given context."""
        ...


@runtime_checkable
class TelemetrySource(Protocol):
    async def current_snapshots(self) -> Sequence[ServiceHealthSnapshot | Mapping[str, Any]]:
        """Current health snapshot for every known service."""
        ...

    async def history(self, service_name: str, limit: int) -> Sequence[float]:
        """Most recent latency samples, oldest first, at most ``limit``."""
        ...


@runtime_checkable
class AnomalyDetector(Protocol):
    async def detect(self) -> List[AnomalyReport]:
        """Anomalies observed in the current window."""
        ...


@runtime_checkable
class InteractionSource(Protocol):
    async def get_session_interactions(
        self, session_id: str, limit: Optional[int] = None
    ) -> List[Mapping[str, Any]]:
        """Interaction records for a session, most recent last."""
        ...


@runtime_checkable
class EntityStore(Protocol):
    async def get_entity(self, entity_key: str) -> Optional[Dict[str, Any]]:
        """Backing record for ``type:id``, or None if nothing is stored."""
        ...


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, key: str) -> Any:
        ...

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...
