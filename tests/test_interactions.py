"""Tests for interaction normalization."""

import pytest

from trustcast.interactions import (
    classify_outcome,
    count_entity_access,
    extract_unique_entities,
    normalize_interaction,
    normalize_interactions,
    session_success_rate,
)
from trustcast.types import EntityRef, Interaction, Outcome


class TestClassifyOutcome:
    @pytest.mark.parametrize(
        "raw",
        [{"success": True}, {"result": "success"}, {"completed": True}, {"outcome": "success"}],
    )
    def test_success_markers(self, raw):
        assert classify_outcome(raw) is Outcome.SUCCESS

    @pytest.mark.parametrize(
        "raw",
        [{"success": False}, {"completed": False}, {"result": "error"}, {"outcome": "failure"}],
    )
    def test_failure_markers(self, raw):
        assert classify_outcome(raw) is Outcome.FAILURE

    def test_no_marker_is_unknown(self):
        assert classify_outcome({"type": "query"}) is Outcome.UNKNOWN

    def test_truthy_non_bool_success_is_not_success(self):
        assert classify_outcome({"success": "yes"}) is Outcome.UNKNOWN


class TestNormalize:
    def test_normalize_interaction(self):
        interaction = normalize_interaction(
            {
                "type": "decision",
                "success": True,
                "domain": "legal",
                "entities": [{"type": "case", "id": 7}, {"type": "doc"}, "junk"],
            }
        )
        assert interaction.is_decision
        assert interaction.outcome is Outcome.SUCCESS
        assert interaction.domain == "legal"
        assert interaction.entities == (EntityRef("case", "7"),)

    def test_interaction_passes_through(self):
        original = Interaction(kind="query")
        assert normalize_interaction(original) is original

    def test_batch_skips_non_mappings(self):
        result = normalize_interactions([{"type": "query"}, None, 3, {"type": "decision"}])
        assert [i.kind for i in result] == ["query", "decision"]


class TestSessionAggregates:
    def test_unique_entities_deduplicated_in_order(self):
        interactions = normalize_interactions(
            [
                {"entities": [{"type": "case", "id": "1"}, {"type": "doc", "id": "2"}]},
                {"entities": [{"type": "case", "id": "1"}]},
            ]
        )
        assert extract_unique_entities(interactions) == ["case:1", "doc:2"]

    def test_success_rate_empty_session(self):
        assert session_success_rate([]) == 0.0

    def test_success_rate_counts_only_successes(self):
        interactions = normalize_interactions(
            [{"success": True}, {"result": "success"}, {"success": False}, {}]
        )
        assert session_success_rate(interactions) == 0.5

    def test_count_entity_access_most_frequent_first(self):
        interactions = normalize_interactions(
            [
                {"entities": [{"type": "doc", "id": "2"}]},
                {"entities": [{"type": "case", "id": "1"}]},
                {"entities": [{"type": "case", "id": "1"}]},
            ]
        )
        assert count_entity_access(interactions) == [("case:1", 2), ("doc:2", 1)]
