"""Tests for TrustLedger: binding resolution, experience commit, trust evolution."""

from unittest.mock import AsyncMock, patch

import pytest

from trustcast.features.trust_ledger import (
    BINDING_CACHE_TTL,
    TrustLedger,
    binding_cache_key,
    factors_hash,
    trust_cache_key,
)
from trustcast.protocols import IdentityMintError, StorageError, UpstreamUnavailableError
from trustcast.types import (
    ExperienceCommitFailed,
    ExperienceCommitted,
    SessionContext,
    TrustTrigger,
    UnbindReason,
    VersionConflictError,
)

SESSION_INTERACTIONS = [
    {
        "type": "decision",
        "success": True,
        "domain": "legal",
        "entities": [{"type": "case", "id": "1"}],
    },
    {
        "type": "query",
        "result": "success",
        "entities": [{"type": "case", "id": "1"}, {"type": "doc", "id": "7"}],
    },
    {"type": "query", "success": False},
    {"type": "query"},
]


class TestResolveAnchor:
    @pytest.mark.asyncio
    async def test_new_session_mints_anchor_and_profile(self, ledger, minter, storage, cache):
        anchor = await ledger.resolve_anchor("sess-1", {"userId": "u1", "platform": "web"})

        assert anchor == "anchor-001"
        assert len(minter.calls) == 1
        assert minter.calls[0]["client_fingerprint"] == "user:u1|platform:web"
        assert storage.get_profile(anchor).trust_score == 50.0
        assert storage.get_active_binding("sess-1").identity_anchor == anchor

        assert (await cache.get(binding_cache_key("sess-1")))["identity_anchor"] == anchor
        assert cache.ttl_remaining(binding_cache_key("sess-1")) == pytest.approx(BINDING_CACHE_TTL)

    @pytest.mark.asyncio
    async def test_repeat_resolution_uses_cache(self, ledger, minter, storage):
        first = await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        with patch.object(storage, "get_active_binding") as get_binding:
            second = await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        assert first == second
        get_binding.assert_not_called()
        assert len(minter.calls) == 1

    @pytest.mark.asyncio
    async def test_cached_resolution_refreshes_last_activity(self, ledger, storage, clock):
        await ledger.resolve_anchor("sess-1")
        clock.advance(minutes=10)
        await ledger.resolve_anchor("sess-1")
        assert storage.get_active_binding("sess-1").last_activity == clock()

    @pytest.mark.asyncio
    async def test_cached_anchor_of_closed_binding_is_dropped(self, ledger, storage, minter):
        first = await ledger.resolve_anchor("sess-1")
        storage.unbind("sess-1", UnbindReason.EXPIRED)

        second = await ledger.resolve_anchor("sess-1")
        assert second != first
        assert len(minter.calls) == 2
        assert storage.get_active_binding("sess-1").identity_anchor == second

    @pytest.mark.asyncio
    async def test_resolution_falls_back_to_stored_binding(self, ledger, minter, cache):
        first = await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        await cache.delete(binding_cache_key("sess-1"))

        assert await ledger.resolve_anchor("sess-1") == first
        assert len(minter.calls) == 1

    @pytest.mark.asyncio
    async def test_same_user_new_session_reuses_anchor(self, ledger, minter):
        first = await ledger.resolve_anchor("sess-1", {"user_id": "u1", "platform": "web"})
        second = await ledger.resolve_anchor("sess-2", {"user_id": "u1", "platform": "cli"})
        assert first == second
        assert len(minter.calls) == 1

    @pytest.mark.asyncio
    async def test_same_fingerprint_reuses_anchor(self, ledger, minter):
        context = SessionContext(platform="web", fingerprint="fp-9")
        first = await ledger.resolve_anchor("sess-1", context)
        second = await ledger.resolve_anchor("sess-2", context)
        assert first == second
        assert len(minter.calls) == 1

    @pytest.mark.asyncio
    async def test_anonymous_sessions_get_distinct_anchors(self, ledger, minter):
        first = await ledger.resolve_anchor("sess-1")
        second = await ledger.resolve_anchor("sess-2")
        assert first != second
        assert len(minter.calls) == 2

    @pytest.mark.asyncio
    async def test_mint_failure_propagates_without_binding(self, storage, cache, clock):
        minter = AsyncMock()
        minter.mint.side_effect = IdentityMintError("identity service unavailable")
        ledger = TrustLedger(storage, cache, minter, now_fn=clock)

        with pytest.raises(IdentityMintError):
            await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        assert storage.get_active_binding("sess-1") is None
        assert storage.count("experience_profiles") == 0

    @pytest.mark.asyncio
    async def test_empty_session_id_rejected(self, ledger):
        with pytest.raises(ValueError):
            await ledger.resolve_anchor("")

    @pytest.mark.asyncio
    async def test_get_anchor_for_session(self, ledger):
        assert await ledger.get_anchor_for_session("sess-1") is None
        anchor = await ledger.resolve_anchor("sess-1")
        assert await ledger.get_anchor_for_session("sess-1") == anchor

    @pytest.mark.asyncio
    async def test_get_active_sessions(self, ledger):
        anchor = await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        await ledger.resolve_anchor("sess-2", {"user_id": "u1"})
        sessions = await ledger.get_active_sessions(anchor)
        assert {b.session_id for b in sessions} == {"sess-1", "sess-2"}


class TestSessionActivity:
    @pytest.mark.asyncio
    async def test_record_interaction_updates_counters(self, ledger, storage):
        await ledger.resolve_anchor("sess-1")
        await ledger.record_interaction("sess-1", SESSION_INTERACTIONS[0])
        await ledger.record_interaction("sess-1", SESSION_INTERACTIONS[1])

        binding = storage.get_active_binding("sess-1")
        assert binding.interactions_count == 2
        assert binding.decisions_count == 1
        # case:1 is counted once across the session
        assert binding.entities_discovered == 2

    @pytest.mark.asyncio
    async def test_record_interaction_without_binding(self, ledger):
        assert await ledger.record_interaction("ghost", {"type": "query"}) is False

    @pytest.mark.asyncio
    async def test_repeated_entities_counted_once(self, storage, cache, minter, clock):
        ledger = TrustLedger(storage, cache, minter, now_fn=clock)
        await ledger.resolve_anchor("sess-1")
        for _ in range(3):
            await ledger.record_interaction("sess-1", {"entities": [{"type": "case", "id": "1"}]})

        result = await ledger.commit_experience("sess-1")
        assert result.metrics["interactions"] == 3
        assert result.metrics["entities"] == 1

    @pytest.mark.asyncio
    async def test_set_session_risk_range(self, ledger, storage):
        await ledger.resolve_anchor("sess-1")
        assert await ledger.set_session_risk("sess-1", 35.0) is True
        assert storage.get_active_binding("sess-1").session_risk_score == 35.0
        with pytest.raises(ValueError):
            await ledger.set_session_risk("sess-1", 140.0)

    @pytest.mark.asyncio
    async def test_increment_session_metric(self, ledger, storage):
        await ledger.resolve_anchor("sess-1")
        await ledger.increment_session_metric("sess-1", "entities_discovered", 4)
        assert storage.get_active_binding("sess-1").entities_discovered == 4
        with pytest.raises(ValueError):
            await ledger.increment_session_metric("sess-1", "trust_score")


class TestCommitExperience:
    @pytest.mark.asyncio
    async def test_commit_updates_profile_and_unbinds(self, ledger, storage, interaction_source, clock):
        anchor = await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        interaction_source.sessions["sess-1"] = SESSION_INTERACTIONS

        result = await ledger.commit_experience("sess-1")

        assert isinstance(result, ExperienceCommitted)
        assert result.committed is True
        assert result.metrics["interactions"] == 4
        assert result.metrics["decisions"] == 1
        assert result.metrics["entities"] == 2
        assert result.metrics["success_rate"] == 0.5

        profile = storage.get_profile(anchor)
        assert profile.total_interactions == 4
        assert profile.total_decisions == 1
        assert profile.total_entities == 2
        assert profile.success_rate == 0.5
        assert profile.expertise_domains == {"legal"}
        assert profile.newest_interaction == clock()
        assert profile.oldest_interaction == clock()
        # volume 23.27, success 50, anomaly 100, session quality 100, recency 100
        assert profile.trust_score == pytest.approx(69.65)
        assert profile.current_trust_level == 3

        assert storage.get_active_binding("sess-1") is None
        assert interaction_source.requests == [("sess-1", None)]

    @pytest.mark.asyncio
    async def test_long_session_is_fully_counted(self, ledger, storage, interaction_source):
        anchor = await ledger.resolve_anchor("sess-big")
        interaction_source.sessions["sess-big"] = [{"type": "query", "success": True}] * 120

        result = await ledger.commit_experience("sess-big")

        assert result.metrics["interactions"] == 120
        profile = storage.get_profile(anchor)
        assert profile.total_interactions == 120
        assert profile.success_rate == 1.0

    @pytest.mark.asyncio
    async def test_binding_lookup_failure_is_non_fatal(self, ledger, storage):
        await ledger.resolve_anchor("sess-1")
        with patch.object(
            storage, "get_active_binding", side_effect=StorageError("database is locked")
        ) as get_binding:
            result = await ledger.commit_experience("sess-1")

        assert get_binding.call_count == 2
        assert isinstance(result, ExperienceCommitFailed)
        assert result.committed is False
        assert result.attempts == 2
        assert "locked" in result.reason
        assert storage.get_active_binding("sess-1") is None

    @pytest.mark.asyncio
    async def test_commit_writes_evolution_record(self, ledger, storage, interaction_source):
        anchor = await ledger.resolve_anchor("sess-1")
        interaction_source.sessions["sess-1"] = SESSION_INTERACTIONS

        result = await ledger.commit_experience("sess-1")
        assert result.trust_changed is True

        history = storage.get_trust_history(anchor)
        assert len(history) == 1
        record = history[0]
        assert record.change_trigger == "session_complete"
        assert record.previous_trust_score == 50.0
        assert record.new_trust_score == pytest.approx(69.65)
        assert record.content_hash == factors_hash(record.change_factors)
        assert set(record.change_factors) >= {
            "volume",
            "success",
            "anomalyPenalty",
            "sessionQuality",
            "recency",
            "score",
        }

    @pytest.mark.asyncio
    async def test_empty_session_commits_without_trust_change(self, ledger, storage):
        anchor = await ledger.resolve_anchor("sess-1")
        result = await ledger.commit_experience("sess-1")

        assert isinstance(result, ExperienceCommitted)
        assert result.trust_changed is False
        assert storage.count_trust_history(anchor) == 0
        assert storage.get_active_binding("sess-1") is None

    @pytest.mark.asyncio
    async def test_success_rate_is_interaction_weighted(self, ledger, storage, interaction_source):
        anchor = await ledger.resolve_anchor("sess-1", {"user_id": "u1"})
        interaction_source.sessions["sess-1"] = [{"success": True}] * 3 + [{"success": False}]
        await ledger.commit_experience("sess-1")

        await ledger.resolve_anchor("sess-2", {"user_id": "u1"})
        interaction_source.sessions["sess-2"] = [{"success": False}] * 4
        await ledger.commit_experience("sess-2")

        profile = storage.get_profile(anchor)
        assert profile.total_interactions == 8
        assert profile.success_rate == pytest.approx(3 / 8)

    @pytest.mark.asyncio
    async def test_risk_score_is_weighted_average(self, ledger, storage):
        anchor = await ledger.resolve_anchor("sess-1")
        await ledger.set_session_risk("sess-1", 50.0)
        await ledger.commit_experience("sess-1")
        assert storage.get_profile(anchor).risk_score == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_commit_uses_binding_counters_without_source(self, storage, cache, minter, clock):
        ledger = TrustLedger(storage, cache, minter, now_fn=clock)
        anchor = await ledger.resolve_anchor("sess-1")
        await ledger.record_interaction("sess-1", {"type": "decision"})
        await ledger.record_interaction("sess-1", {"type": "query"})

        result = await ledger.commit_experience("sess-1")
        assert result.metrics["interactions"] == 2
        assert result.metrics["decisions"] == 1
        assert storage.get_profile(anchor).total_interactions == 2

    @pytest.mark.asyncio
    async def test_unavailable_source_falls_back_to_counters(self, ledger, interaction_source):
        await ledger.resolve_anchor("sess-1")
        await ledger.record_interaction("sess-1", {"type": "query"})
        interaction_source.get_session_interactions = AsyncMock(
            side_effect=UpstreamUnavailableError("store offline")
        )
        result = await ledger.commit_experience("sess-1")
        assert result.committed is True
        assert result.metrics["interactions"] == 1

    @pytest.mark.asyncio
    async def test_commit_without_binding(self, ledger):
        result = await ledger.commit_experience("never-bound")
        assert isinstance(result, ExperienceCommitFailed)
        assert result.committed is False
        assert result.identity_anchor is None

    @pytest.mark.asyncio
    async def test_commit_retries_once_then_succeeds(self, ledger, storage):
        await ledger.resolve_anchor("sess-1")
        with patch.object(
            ledger, "_commit_sync", side_effect=[StorageError("database is locked"), None]
        ) as commit_sync:
            result = await ledger.commit_experience("sess-1")
        assert commit_sync.call_count == 2
        assert isinstance(result, ExperienceCommitted)
        assert storage.get_active_binding("sess-1") is None

    @pytest.mark.asyncio
    async def test_commit_failure_is_non_fatal_and_unbinds(self, ledger, storage):
        anchor = await ledger.resolve_anchor("sess-1")
        with patch.object(
            ledger,
            "_commit_sync",
            side_effect=VersionConflictError("experience_profiles", anchor, 1, 2),
        ) as commit_sync:
            result = await ledger.commit_experience("sess-1")

        assert commit_sync.call_count == 2
        assert isinstance(result, ExperienceCommitFailed)
        assert result.attempts == 2
        assert result.identity_anchor == anchor
        assert storage.get_active_binding("sess-1") is None
        assert storage.get_bindings_for_anchor(anchor)[0].unbind_reason == "session_complete"

    @pytest.mark.asyncio
    async def test_commit_clears_cached_binding(self, ledger, cache):
        await ledger.resolve_anchor("sess-1")
        await ledger.commit_experience("sess-1")
        assert await cache.get(binding_cache_key("sess-1")) is None


class TestUnbindSession:
    @pytest.mark.asyncio
    async def test_revoked_session_no_longer_resolves(self, ledger, storage, cache):
        anchor = await ledger.resolve_anchor("sess-1")

        assert await ledger.unbind_session("sess-1", UnbindReason.REVOKED) is True

        assert await cache.get(binding_cache_key("sess-1")) is None
        assert await ledger.get_anchor_for_session("sess-1") is None
        assert storage.get_bindings_for_anchor(anchor)[0].unbind_reason == "revoked"

    @pytest.mark.asyncio
    async def test_unbind_is_exactly_once(self, ledger):
        await ledger.resolve_anchor("sess-1")
        assert await ledger.unbind_session("sess-1", "expired") is True
        assert await ledger.unbind_session("sess-1", "expired") is False

    @pytest.mark.asyncio
    async def test_unknown_reason_rejected(self, ledger, storage):
        await ledger.resolve_anchor("sess-1")
        with pytest.raises(ValueError):
            await ledger.unbind_session("sess-1", "bored")
        assert storage.get_active_binding("sess-1") is not None

    @pytest.mark.asyncio
    async def test_rebound_session_counts_entities_afresh(self, ledger, storage):
        entity = {"entities": [{"type": "case", "id": "1"}]}
        await ledger.resolve_anchor("sess-1")
        await ledger.record_interaction("sess-1", entity)
        await ledger.unbind_session("sess-1", UnbindReason.EXPIRED)

        await ledger.resolve_anchor("sess-1")
        await ledger.record_interaction("sess-1", entity)
        assert storage.get_active_binding("sess-1").entities_discovered == 1


class TestRecalculateTrust:
    @pytest.mark.asyncio
    async def test_unchanged_inputs_write_no_records(self, ledger, storage, interaction_source):
        anchor = await ledger.resolve_anchor("sess-1")
        interaction_source.sessions["sess-1"] = SESSION_INTERACTIONS
        await ledger.commit_experience("sess-1")
        version = storage.get_profile(anchor).version

        assert await ledger.recalculate_trust(anchor) is None
        assert await ledger.recalculate_trust(anchor) is None
        assert storage.count_trust_history(anchor) == 1
        assert storage.get_profile(anchor).version == version

    @pytest.mark.asyncio
    async def test_recency_decay_writes_record(self, ledger, storage, interaction_source, clock):
        anchor = await ledger.resolve_anchor("sess-1")
        interaction_source.sessions["sess-1"] = SESSION_INTERACTIONS
        await ledger.commit_experience("sess-1")
        before = storage.get_profile(anchor).trust_score

        clock.advance(days=10)
        record = await ledger.recalculate_trust(anchor, TrustTrigger.SESSION_COMPLETE)

        assert record is not None
        assert record.new_trust_score == pytest.approx(before - 0.15 * 20, abs=0.01)
        assert storage.get_profile(anchor).trust_score == record.new_trust_score

    @pytest.mark.asyncio
    async def test_missing_profile_raises(self, ledger):
        with pytest.raises(ValueError):
            await ledger.recalculate_trust("nobody")

    @pytest.mark.asyncio
    async def test_version_conflict_is_retried(self, ledger, storage, clock):
        anchor = await ledger.resolve_anchor("sess-1")
        real_apply = storage.apply_trust_change
        calls = {"n": 0}

        def flaky_apply(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise VersionConflictError("experience_profiles", anchor, 1, 2)
            return real_apply(*args, **kwargs)

        with patch.object(storage, "apply_trust_change", side_effect=flaky_apply):
            record = await ledger.record_anomaly(anchor, "velocity")

        assert calls["n"] == 2
        assert record is not None
        assert storage.get_profile(anchor).anomaly_count == 1
        assert storage.count_trust_history(anchor) == 1


class TestAnomaliesAndOverrides:
    @pytest.mark.asyncio
    async def test_record_anomaly_lowers_score(self, ledger, storage, clock):
        anchor = await ledger.resolve_anchor("sess-1")
        record = await ledger.record_anomaly(anchor, "credential_stuffing")

        assert record.change_trigger == "anomaly_detected"
        assert record.new_trust_score < record.previous_trust_score
        assert record.change_factors["anomaly_type"] == "credential_stuffing"

        profile = storage.get_profile(anchor)
        assert profile.anomaly_count == 1
        assert profile.last_anomaly_at == clock()

    @pytest.mark.asyncio
    async def test_override_sets_score_and_level(self, ledger, storage):
        anchor = await ledger.resolve_anchor("sess-1")
        record = await ledger.override_trust(anchor, 95.0, "manual review")

        assert record.change_trigger == "admin_override"
        assert record.new_trust_level == 5
        assert record.change_factors["reason"] == "manual review"
        profile = storage.get_profile(anchor)
        assert (profile.trust_score, profile.current_trust_level) == (95.0, 5)

    @pytest.mark.asyncio
    async def test_override_clamps_score(self, ledger, storage):
        anchor = await ledger.resolve_anchor("sess-1")
        await ledger.override_trust(anchor, -20.0, "lockout")
        profile = storage.get_profile(anchor)
        assert (profile.trust_score, profile.current_trust_level) == (0.0, 0)

    @pytest.mark.asyncio
    async def test_override_requires_reason(self, ledger):
        anchor = await ledger.resolve_anchor("sess-1")
        with pytest.raises(ValueError):
            await ledger.override_trust(anchor, 80.0, "")


class TestTrustStanding:
    @pytest.mark.asyncio
    async def test_standing_from_profile_is_cached(self, ledger, storage, cache):
        anchor = await ledger.resolve_anchor("sess-1")
        standing = await ledger.get_trust_standing(anchor)
        assert (standing.trust_level, standing.trust_score, standing.level_name) == (3, 50.0, "Standard")
        assert await cache.get(trust_cache_key(anchor)) is not None

        with patch.object(storage, "get_profile", side_effect=StorageError("down")):
            cached = await ledger.get_trust_standing(anchor)
        assert cached.trust_level == 3
        assert cached.source == "cache"

    @pytest.mark.asyncio
    async def test_unknown_anchor_fails_closed(self, ledger):
        standing = await ledger.get_trust_standing("nobody")
        assert standing.trust_level == 0
        assert standing.trust_score == 0.0
        assert standing.level_name == "Restricted"
        assert standing.source == "fail_closed"

    @pytest.mark.asyncio
    async def test_storage_failure_fails_closed_and_is_not_cached(self, ledger, storage, cache):
        with patch.object(storage, "get_profile", side_effect=StorageError("disk I/O error")):
            standing = await ledger.get_trust_standing("anchor-x")
        assert standing.trust_level == 0
        assert await cache.get(trust_cache_key("anchor-x")) is None

    @pytest.mark.asyncio
    async def test_trust_change_invalidates_cached_standing(self, ledger):
        anchor = await ledger.resolve_anchor("sess-1")
        await ledger.get_trust_standing(anchor)
        await ledger.override_trust(anchor, 80.0, "promotion")
        standing = await ledger.get_trust_standing(anchor)
        assert (standing.trust_level, standing.trust_score) == (4, 80.0)

    @pytest.mark.asyncio
    async def test_trust_history_newest_first(self, ledger, clock):
        anchor = await ledger.resolve_anchor("sess-1")
        await ledger.override_trust(anchor, 80.0, "first")
        clock.advance(minutes=1)
        await ledger.override_trust(anchor, 20.0, "second")
        history = await ledger.get_trust_history(anchor)
        assert [r.change_factors["reason"] for r in history] == ["second", "first"]
        assert (await ledger.get_profile(anchor)).current_trust_level == 1


class TestCacheExpiry:
    @pytest.mark.asyncio
    async def test_binding_cache_expires(self, ledger, cache, clock):
        await ledger.resolve_anchor("sess-1")
        clock.advance(seconds=BINDING_CACHE_TTL + 1)
        assert await cache.get(binding_cache_key("sess-1")) is None
        # the stored binding still resolves
        assert await ledger.get_anchor_for_session("sess-1") == "anchor-001"
