"""Trust ledger: session-to-identity binding and experience-based trust.

Ephemeral session ids resolve to a durable identity anchor (cache, then
active binding, then context match, then mint). Committed sessions fold into
the anchor's ExperienceProfile, and trust is recomputed from five weighted
sub-scores. Every actual change to (level, score) is written together with
an append-only TrustEvolutionRecord.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from trustcast.interactions import (
    extract_unique_entities,
    normalize_interaction,
    normalize_interactions,
    session_success_rate,
)
from trustcast.identity import build_fingerprint
from trustcast.logging_config import log_session_event, log_trust_change
from trustcast.protocols import (
    CacheBackend,
    IdentityMinter,
    IdentityMintError,
    InteractionSource,
    StorageError,
    UpstreamUnavailableError,
)
from trustcast.scoring import clamp
from trustcast.storage import SQLiteStorage
from trustcast.types import (
    ExperienceCommitFailed,
    ExperienceCommitted,
    ExperienceProfile,
    Interaction,
    SessionBinding,
    SessionContext,
    TrustBreakdown,
    TrustEvolutionRecord,
    TrustStanding,
    TrustTrigger,
    UnbindReason,
    VersionConflictError,
    utc_now,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

TRUST_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ("volume", 0.20),
    ("success", 0.30),
    ("anomalyPenalty", 0.20),
    ("sessionQuality", 0.15),
    ("recency", 0.15),
)

# (minimum score, level, name), highest band first; boundaries belong to the higher band
TRUST_LEVELS: Tuple[Tuple[float, int, str], ...] = (
    (90.0, 5, "Exemplary"),
    (75.0, 4, "Established"),
    (50.0, 3, "Standard"),
    (25.0, 2, "Probationary"),
    (10.0, 1, "Limited"),
    (0.0, 0, "Restricted"),
)

BINDING_CACHE_TTL = 3600
TRUST_CACHE_TTL = 300
SESSION_RISK_WEIGHT = 0.3
RECENCY_DECAY_PER_DAY = 2.0
ANOMALY_PENALTY_PER_EVENT = 10.0
COMMIT_MAX_ATTEMPTS = 2

_RETRYABLE = (StorageError, sqlite3.Error, VersionConflictError)


def binding_cache_key(session_id: str) -> str:
    return f"binding:{session_id}"


def trust_cache_key(identity_anchor: str) -> str:
    return f"trust:{identity_anchor}"


# =============================================================================
# Pure scoring
# =============================================================================


def trust_breakdown(
    profile: ExperienceProfile,
    average_session_risk: Optional[float] = None,
    now: Optional[datetime] = None,
) -> TrustBreakdown:
    """Compute every trust sub-score for a profile.

    Args:
        profile: The experience profile to score.
        average_session_risk: Mean risk (0-100) over the identity's recent
            sessions. Falls back to the profile's own risk_score.
        now: Reference time for recency. Defaults to the current time.
    """
    now = now or utc_now()

    volume = min(
        100.0,
        math.log10(profile.total_interactions + 1) * 20
        + math.log10(profile.total_decisions + 1) * 15
        + math.log10(profile.total_entities + 1) * 10,
    )
    success = clamp((profile.success_rate or 0.0) * 100, 0.0, 100.0)
    anomaly = 100.0 - min(100.0, (profile.anomaly_count or 0) * ANOMALY_PENALTY_PER_EVENT)

    risk = profile.risk_score if average_session_risk is None else average_session_risk
    session_quality = clamp(100.0 - (risk or 0.0), 0.0, 100.0)

    recency = 100.0
    if profile.newest_interaction is not None:
        days = (now - profile.newest_interaction).total_seconds() / 86400
        recency = max(0.0, 100.0 - RECENCY_DECAY_PER_DAY * max(days, 0.0))

    weights = dict(TRUST_WEIGHTS)
    raw = (
        weights["volume"] * volume
        + weights["success"] * success
        + weights["anomalyPenalty"] * anomaly
        + weights["sessionQuality"] * session_quality
        + weights["recency"] * recency
    )
    return TrustBreakdown(
        volume=volume,
        success=success,
        anomaly=anomaly,
        session_quality=session_quality,
        recency=recency,
        weights=TRUST_WEIGHTS,
        score=round(clamp(raw, 0.0, 100.0), 2),
    )


def calculate_trust_score(
    profile: ExperienceProfile,
    average_session_risk: Optional[float] = None,
    now: Optional[datetime] = None,
) -> float:
    """Weighted trust score in [0, 100], rounded to two decimals."""
    return trust_breakdown(profile, average_session_risk, now).score


def trust_score_to_level(score: float) -> int:
    for minimum, level, _ in TRUST_LEVELS:
        if score >= minimum:
            return level
    return 0


def trust_level_name(level: int) -> str:
    for _, band, name in TRUST_LEVELS:
        if band == level:
            return name
    raise ValueError(f"Unknown trust level: {level}")


def factors_hash(factors: Mapping[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of change factors."""
    canonical = json.dumps(factors, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fail_closed_standing(identity_anchor: str) -> TrustStanding:
    return TrustStanding(
        identity_anchor=identity_anchor,
        trust_level=0,
        trust_score=0.0,
        level_name=trust_level_name(0),
        source="fail_closed",
    )


# =============================================================================
# Ledger
# =============================================================================


class TrustLedger:
    """Binds sessions to identity anchors and maintains their trust.

    One instance per process; storage and cache are shared with the rest
    of the engine.
    """

    def __init__(
        self,
        storage: SQLiteStorage,
        cache: CacheBackend,
        minter: IdentityMinter,
        interaction_source: Optional[InteractionSource] = None,
        session_risk_window: int = 10,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self._storage = storage
        self._cache = cache
        self._minter = minter
        self._interactions = interaction_source
        self._session_risk_window = session_risk_window
        self._now = now_fn
        # Entity keys already counted per bound session
        self._session_entities: Dict[str, Set[str]] = {}

    # === Session binding ===

    async def resolve_anchor(
        self,
        session_id: str,
        context: SessionContext | Mapping[str, Any] | None = None,
    ) -> str:
        """Resolve the durable identity anchor for a session.

        Raises:
            ValueError: If session_id is empty.
            IdentityMintError: If a new anchor is needed and cannot be minted.
        """
        if not session_id:
            raise ValueError("session_id is required")

        cached = await self._cache.get(binding_cache_key(session_id))
        if isinstance(cached, Mapping) and cached.get("identity_anchor"):
            if await asyncio.to_thread(self._storage.touch_binding, session_id):
                return cached["identity_anchor"]
            # Binding closed behind the cache
            await self._cache.delete(binding_cache_key(session_id))

        binding = await asyncio.to_thread(self._storage.get_active_binding, session_id)
        if binding is not None:
            await asyncio.to_thread(self._storage.touch_binding, session_id)
            await self._cache_binding(binding)
            log_session_event(session_id, "resumed", binding.identity_anchor)
            return binding.identity_anchor

        if not isinstance(context, SessionContext):
            context = SessionContext.from_mapping(context)
        fingerprint = build_fingerprint(context)

        anchor = await self._match_context(context, fingerprint)
        if anchor is None:
            anchor = await self._minter.mint(
                {
                    "session_id": session_id,
                    "platform": context.platform or "unknown",
                    "client_fingerprint": fingerprint,
                }
            )
            if not anchor:
                raise IdentityMintError("Identity minter returned an empty anchor")
            log_session_event(session_id, "minted", anchor)

        await asyncio.to_thread(self._storage.ensure_profile, anchor)
        binding = await asyncio.to_thread(
            self._storage.create_binding,
            session_id,
            anchor,
            context.platform or "unknown",
            fingerprint,
        )
        await self._cache_binding(binding)
        log_session_event(session_id, "bound", binding.identity_anchor)
        return binding.identity_anchor

    async def _match_context(self, context: SessionContext, fingerprint: str) -> Optional[str]:
        if context.user_id:
            anchor = await asyncio.to_thread(self._storage.find_anchor_by_user, context.user_id)
            if anchor:
                return anchor
        if fingerprint != "unknown":
            return await asyncio.to_thread(self._storage.find_anchor_by_fingerprint, fingerprint)
        return None

    async def _cache_binding(self, binding: SessionBinding) -> None:
        await self._cache.put(
            binding_cache_key(binding.session_id),
            {"identity_anchor": binding.identity_anchor, "binding_id": binding.id},
            BINDING_CACHE_TTL,
        )

    async def get_anchor_for_session(self, session_id: str) -> Optional[str]:
        cached = await self._cache.get(binding_cache_key(session_id))
        if isinstance(cached, Mapping) and cached.get("identity_anchor"):
            return cached["identity_anchor"]
        binding = await asyncio.to_thread(self._storage.get_active_binding, session_id)
        return binding.identity_anchor if binding else None

    async def get_active_sessions(self, identity_anchor: str) -> List[SessionBinding]:
        return await asyncio.to_thread(
            self._storage.get_bindings_for_anchor, identity_anchor, True
        )

    # === Session activity ===

    async def record_interaction(
        self, session_id: str, interaction: Interaction | Mapping[str, Any]
    ) -> bool:
        """Count one interaction against the session's active binding.

        Entities are counted once per session, the first time they appear.
        """
        interaction = normalize_interaction(interaction)
        seen = self._session_entities.get(session_id, set())
        new_entities = {e.key for e in interaction.entities} - seen
        recorded = await asyncio.to_thread(
            self._storage.record_interaction_counts,
            session_id,
            1,
            1 if interaction.is_decision else 0,
            len(new_entities),
        )
        if recorded:
            self._session_entities[session_id] = seen | new_entities
        else:
            logger.debug(f"No active binding for session {session_id}; interaction not counted")
        return recorded

    async def increment_session_metric(self, session_id: str, metric: str, amount: int = 1) -> bool:
        return await asyncio.to_thread(self._storage.increment_metric, session_id, metric, amount)

    async def set_session_risk(self, session_id: str, risk_score: float) -> bool:
        if not 0.0 <= risk_score <= 100.0:
            raise ValueError(f"risk_score must be within [0, 100], got {risk_score}")
        return await asyncio.to_thread(self._storage.set_session_risk, session_id, risk_score)

    # === Experience commit ===

    async def commit_experience(
        self, session_id: str
    ) -> ExperienceCommitted | ExperienceCommitFailed:
        """Fold a finished session into its anchor's profile and close it.

        Persistence failures are retried once and then reported as
        ExperienceCommitFailed. The binding is unbound in every case.
        """
        binding = None
        for attempt in range(1, COMMIT_MAX_ATTEMPTS + 1):
            try:
                binding = await asyncio.to_thread(self._storage.get_active_binding, session_id)
                break
            except _RETRYABLE as e:
                logger.warning(
                    f"Binding lookup attempt {attempt} failed for session {session_id}: {e}"
                )
                if attempt == COMMIT_MAX_ATTEMPTS:
                    logger.error(f"Experience commit failed for session {session_id}: {e}")
                    await self._close_binding(session_id)
                    return ExperienceCommitFailed(
                        session_id=session_id,
                        identity_anchor=None,
                        reason=str(e),
                        attempts=attempt,
                    )

        if binding is None:
            logger.warning(f"No active binding found for session {session_id}")
            return ExperienceCommitFailed(
                session_id=session_id, identity_anchor=None, reason="no active binding"
            )

        attempts = 0
        try:
            metrics = await self._session_metrics(binding)
            last_error: Optional[Exception] = None
            while attempts < COMMIT_MAX_ATTEMPTS:
                attempts += 1
                try:
                    record = await asyncio.to_thread(self._commit_sync, binding, metrics)
                    break
                except _RETRYABLE as e:
                    last_error = e
                    logger.warning(
                        f"Experience commit attempt {attempts} failed for session "
                        f"{session_id}: {e}"
                    )
            else:
                logger.error(
                    f"Experience commit failed for session {session_id} after "
                    f"{attempts} attempts: {last_error}"
                )
                return ExperienceCommitFailed(
                    session_id=session_id,
                    identity_anchor=binding.identity_anchor,
                    reason=str(last_error),
                    attempts=attempts,
                )
        finally:
            await self._close_binding(session_id, binding.identity_anchor)

        if record is not None:
            self._log_record(record)
        await self._cache.delete(trust_cache_key(binding.identity_anchor))
        log_session_event(
            session_id,
            "committed",
            binding.identity_anchor,
            f"interactions={metrics['interactions']}",
        )
        return ExperienceCommitted(
            session_id=session_id,
            identity_anchor=binding.identity_anchor,
            metrics=metrics,
            trust_changed=record is not None,
        )

    async def _session_metrics(self, binding: SessionBinding) -> Dict[str, Any]:
        interactions: Optional[List[Interaction]] = None
        if self._interactions is not None:
            try:
                raws = await self._interactions.get_session_interactions(binding.session_id)
                interactions = normalize_interactions(raws or [])
            except UpstreamUnavailableError as e:
                logger.warning(
                    f"Interaction source unavailable for session {binding.session_id}, "
                    f"using binding counters: {e}"
                )

        if interactions is None:
            return {
                "interactions": binding.interactions_count,
                "decisions": binding.decisions_count,
                "entities": binding.entities_discovered,
                "success_rate": binding.session_success_rate or 0.0,
                "risk_score": binding.session_risk_score,
                "domains": [],
            }

        domains = sorted({i.domain for i in interactions if i.domain})
        return {
            "interactions": len(interactions),
            "decisions": sum(1 for i in interactions if i.is_decision),
            "entities": len(extract_unique_entities(interactions)),
            "success_rate": session_success_rate(interactions),
            "risk_score": binding.session_risk_score,
            "domains": domains,
        }

    def _commit_sync(
        self, binding: SessionBinding, metrics: Dict[str, Any]
    ) -> Optional[TrustEvolutionRecord]:
        """Apply session metrics and recalculate trust in one profile write."""
        self._storage.finalize_session_metrics(
            binding.id,
            metrics["interactions"],
            metrics["decisions"],
            metrics["entities"],
            metrics["success_rate"],
        )

        anchor = binding.identity_anchor
        self._storage.ensure_profile(anchor)
        profile = self._storage.get_profile(anchor)
        expected_version = profile.version
        now = self._now()

        session_interactions = metrics["interactions"]
        previous_successes = profile.success_rate * profile.total_interactions
        session_successes = metrics["success_rate"] * session_interactions

        profile.total_interactions += session_interactions
        profile.total_decisions += metrics["decisions"]
        profile.total_entities += metrics["entities"]
        profile.success_rate = (
            (previous_successes + session_successes) / profile.total_interactions
            if profile.total_interactions > 0
            else 0.0
        )
        profile.risk_score = clamp(
            profile.risk_score * (1 - SESSION_RISK_WEIGHT)
            + (metrics["risk_score"] or 0.0) * SESSION_RISK_WEIGHT,
            0.0,
            100.0,
        )
        profile.expertise_domains.update(metrics["domains"])
        profile.newest_interaction = now
        if profile.oldest_interaction is None:
            profile.oldest_interaction = now

        return self._write_trust(
            profile, expected_version, TrustTrigger.SESSION_COMPLETE, now, extra_factors=None
        )

    async def unbind_session(
        self,
        session_id: str,
        reason: UnbindReason | str,
        identity_anchor: Optional[str] = None,
    ) -> bool:
        """Close the session's active binding and drop its cached anchor.

        Returns False if the session was not bound.
        """
        reason = UnbindReason(reason)
        try:
            unbound = await asyncio.to_thread(self._storage.unbind, session_id, reason)
        finally:
            await self._cache.delete(binding_cache_key(session_id))
            self._session_entities.pop(session_id, None)
        if unbound:
            log_session_event(session_id, "unbound", identity_anchor, reason.value)
        return unbound

    async def _close_binding(self, session_id: str, identity_anchor: Optional[str] = None) -> None:
        try:
            await self.unbind_session(session_id, UnbindReason.SESSION_COMPLETE, identity_anchor)
        except _RETRYABLE as e:
            logger.error(f"Failed to unbind session {session_id}: {e}")

    # === Trust recalculation ===

    def _write_trust(
        self,
        profile: ExperienceProfile,
        expected_version: int,
        trigger: TrustTrigger,
        now: datetime,
        extra_factors: Optional[Dict[str, Any]],
        forced_score: Optional[float] = None,
    ) -> Optional[TrustEvolutionRecord]:
        """Persist profile changes, plus an evolution record if trust moved.

        Returns the record, or None when (level, score) is unchanged.
        """
        previous_level = profile.current_trust_level
        previous_score = profile.trust_score

        if forced_score is None:
            average_risk = self._storage.average_session_risk(
                profile.identity_anchor, self._session_risk_window
            )
            breakdown = trust_breakdown(profile, average_risk, now)
            new_score = breakdown.score
            factors = breakdown.to_factors()
        else:
            new_score = round(clamp(forced_score, 0.0, 100.0), 2)
            factors = {"score": new_score}
        if extra_factors:
            factors.update(extra_factors)
        new_level = trust_score_to_level(new_score)

        if (new_level, new_score) == (previous_level, previous_score):
            self._storage.update_profile(profile, expected_version)
            return None

        profile.trust_score = new_score
        profile.current_trust_level = new_level
        profile.trust_last_calculated = now
        record = TrustEvolutionRecord(
            id=str(uuid.uuid4()),
            identity_anchor=profile.identity_anchor,
            previous_trust_level=previous_level,
            new_trust_level=new_level,
            previous_trust_score=previous_score,
            new_trust_score=new_score,
            change_trigger=trigger.value,
            change_factors=factors,
            content_hash=factors_hash(factors),
            changed_at=now,
        )
        self._storage.apply_trust_change(profile, record, expected_version)
        return record

    def _recalculate_sync(
        self,
        identity_anchor: str,
        trigger: TrustTrigger,
        mutate: Optional[Callable[[ExperienceProfile, datetime], Optional[Dict[str, Any]]]] = None,
        forced_score: Optional[float] = None,
    ) -> Optional[TrustEvolutionRecord]:
        profile = self._storage.get_profile(identity_anchor)
        if profile is None:
            raise ValueError(f"No experience profile for {identity_anchor}")
        expected_version = profile.version
        now = self._now()
        extra = mutate(profile, now) if mutate else None

        if mutate is None and forced_score is None:
            # Pure recalculation: nothing to persist unless trust moved
            average_risk = self._storage.average_session_risk(
                identity_anchor, self._session_risk_window
            )
            breakdown = trust_breakdown(profile, average_risk, now)
            level = trust_score_to_level(breakdown.score)
            if (level, breakdown.score) == (profile.current_trust_level, profile.trust_score):
                return None

        return self._write_trust(
            profile, expected_version, trigger, now, extra, forced_score=forced_score
        )

    async def _recalculate(
        self, identity_anchor: str, trigger: TrustTrigger, **kwargs
    ) -> Optional[TrustEvolutionRecord]:
        try:
            record = await asyncio.to_thread(
                self._recalculate_sync, identity_anchor, trigger, **kwargs
            )
        except VersionConflictError as e:
            logger.info(f"Retrying trust recalculation for {identity_anchor}: {e}")
            record = await asyncio.to_thread(
                self._recalculate_sync, identity_anchor, trigger, **kwargs
            )
        await self._cache.delete(trust_cache_key(identity_anchor))
        if record is not None:
            self._log_record(record)
        return record

    async def recalculate_trust(
        self,
        identity_anchor: str,
        trigger: TrustTrigger | str = TrustTrigger.SESSION_COMPLETE,
    ) -> Optional[TrustEvolutionRecord]:
        """Recompute trust; returns the evolution record if (level, score) changed."""
        return await self._recalculate(identity_anchor, TrustTrigger(trigger))

    async def record_anomaly(
        self, identity_anchor: str, anomaly_type: str
    ) -> Optional[TrustEvolutionRecord]:
        def bump(profile: ExperienceProfile, now: datetime) -> Dict[str, Any]:
            profile.anomaly_count += 1
            profile.last_anomaly_at = now
            return {"anomaly_type": anomaly_type, "anomaly_count": profile.anomaly_count}

        logger.info(f"Recording {anomaly_type} anomaly for {identity_anchor}")
        return await self._recalculate(
            identity_anchor, TrustTrigger.ANOMALY_DETECTED, mutate=bump
        )

    async def override_trust(
        self, identity_anchor: str, score: float, reason: str
    ) -> Optional[TrustEvolutionRecord]:
        """Set trust directly; the next recalculation may move it again."""
        if not reason:
            raise ValueError("An override reason is required")

        def note(profile: ExperienceProfile, now: datetime) -> Dict[str, Any]:
            return {"reason": reason, "computed": False}

        return await self._recalculate(
            identity_anchor, TrustTrigger.ADMIN_OVERRIDE, mutate=note, forced_score=score
        )

    # === Reads ===

    async def get_profile(self, identity_anchor: str) -> Optional[ExperienceProfile]:
        return await asyncio.to_thread(self._storage.get_profile, identity_anchor)

    async def get_trust_history(
        self, identity_anchor: str, limit: int = 100
    ) -> List[TrustEvolutionRecord]:
        return await asyncio.to_thread(self._storage.get_trust_history, identity_anchor, limit)

    async def get_trust_standing(self, identity_anchor: str) -> TrustStanding:
        """Trust level and score for access control. Fails closed, never raises."""
        try:
            cached = await self._cache.get(trust_cache_key(identity_anchor))
            if isinstance(cached, Mapping):
                return TrustStanding(**cached)

            profile = await asyncio.to_thread(self._storage.get_profile, identity_anchor)
            if profile is None:
                logger.warning(f"No profile for {identity_anchor}; failing closed")
                return fail_closed_standing(identity_anchor)

            standing = TrustStanding(
                identity_anchor=identity_anchor,
                trust_level=profile.current_trust_level,
                trust_score=profile.trust_score,
                level_name=trust_level_name(profile.current_trust_level),
            )
            await self._cache.put(
                trust_cache_key(identity_anchor),
                {
                    "identity_anchor": standing.identity_anchor,
                    "trust_level": standing.trust_level,
                    "trust_score": standing.trust_score,
                    "level_name": standing.level_name,
                    "source": "cache",
                },
                TRUST_CACHE_TTL,
            )
            return standing
        except Exception as e:
            logger.warning(f"Trust lookup failed for {identity_anchor}, failing closed: {e}")
            return fail_closed_standing(identity_anchor)

    @staticmethod
    def _log_record(record: TrustEvolutionRecord) -> None:
        log_trust_change(
            record.identity_anchor,
            record.previous_trust_level,
            record.new_trust_level,
            record.previous_trust_score,
            record.new_trust_score,
            record.change_trigger,
        )
