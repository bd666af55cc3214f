"""Interaction normalization at the ingestion boundary.

Upstream session stores hand us loosely shaped dicts: success may be
signalled by ``success: true``, ``result: "success"`` or ``completed: true``,
failure by their negatives, and entities arrive as ``{"type", "id"}`` dicts.
Everything past this module works with the tagged ``Interaction`` type.
"""

import logging
from collections import Counter
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

from trustcast.types import EntityRef, Interaction, Outcome

logger = logging.getLogger(__name__)

_FAILURE_RESULTS = frozenset({"failure", "failed", "error"})


def classify_outcome(raw: Mapping[str, Any]) -> Outcome:
    """Map the legacy success markers to an explicit Outcome."""
    outcome = raw.get("outcome")
    if isinstance(outcome, Outcome):
        return outcome
    if isinstance(outcome, str):
        try:
            return Outcome(outcome)
        except ValueError:
            pass

    if raw.get("success") is True or raw.get("result") == "success" or raw.get("completed") is True:
        return Outcome.SUCCESS
    if raw.get("success") is False or raw.get("completed") is False:
        return Outcome.FAILURE
    if isinstance(raw.get("result"), str) and raw["result"].lower() in _FAILURE_RESULTS:
        return Outcome.FAILURE
    return Outcome.UNKNOWN


def _entity_refs(raw_entities: Any) -> Tuple[EntityRef, ...]:
    refs = []
    for entity in raw_entities or ():
        if isinstance(entity, EntityRef):
            refs.append(entity)
            continue
        if not isinstance(entity, Mapping):
            continue
        etype, eid = entity.get("type"), entity.get("id")
        if etype is None or eid is None:
            continue
        refs.append(EntityRef(type=str(etype), id=str(eid)))
    return tuple(refs)


def normalize_interaction(raw: Mapping[str, Any] | Interaction) -> Interaction:
    """Convert one legacy interaction record into an Interaction."""
    if isinstance(raw, Interaction):
        return raw
    return Interaction(
        kind=str(raw.get("type") or raw.get("kind") or "interaction"),
        outcome=classify_outcome(raw),
        entities=_entity_refs(raw.get("entities")),
        domain=raw.get("domain"),
    )


def normalize_interactions(raws: Iterable[Any]) -> List[Interaction]:
    """Normalize a batch, skipping records that are not mappings."""
    normalized = []
    for raw in raws:
        if not isinstance(raw, (Mapping, Interaction)):
            logger.warning(f"Skipping malformed interaction record of type {type(raw).__name__}")
            continue
        normalized.append(normalize_interaction(raw))
    return normalized


def extract_unique_entities(interactions: Sequence[Interaction]) -> List[str]:
    """Unique ``type:id`` keys across a session, in first-seen order."""
    seen = {}
    for interaction in interactions:
        for entity in interaction.entities:
            seen.setdefault(entity.key, None)
    return list(seen)


def session_success_rate(interactions: Sequence[Interaction]) -> float:
    """Share of interactions with a success outcome; 0 for an empty session."""
    if not interactions:
        return 0.0
    successful = sum(1 for i in interactions if i.outcome is Outcome.SUCCESS)
    return successful / len(interactions)


def count_entity_access(interactions: Sequence[Interaction]) -> List[Tuple[str, int]]:
    """Entity reference counts, most frequent first."""
    counts = Counter(entity.key for i in interactions for entity in i.entities)
    return counts.most_common()
