"""Feature modules for trustcast.

Each feature is a class that receives the shared storage and cache
instances at construction.
"""

from trustcast.features.cache_warmer import CacheWarmer, calculate_optimal_ttl
from trustcast.features.failure_prediction import (
    FailurePredictor,
    build_dependency_map,
    calculate_cascade_confidence,
    calculate_cascade_depth,
    estimate_time_to_failure,
    find_dependents,
    make_prediction_id,
)
from trustcast.features.trust_ledger import (
    TRUST_LEVELS,
    TRUST_WEIGHTS,
    TrustLedger,
    calculate_trust_score,
    trust_breakdown,
    trust_level_name,
    trust_score_to_level,
)

__all__ = [
    "CacheWarmer",
    "FailurePredictor",
    "TRUST_LEVELS",
    "TRUST_WEIGHTS",
    "TrustLedger",
    "build_dependency_map",
    "calculate_cascade_confidence",
    "calculate_cascade_depth",
    "calculate_optimal_ttl",
    "calculate_trust_score",
    "estimate_time_to_failure",
    "find_dependents",
    "make_prediction_id",
    "trust_breakdown",
    "trust_level_name",
    "trust_score_to_level",
]
