"""
Trustcast - Experience-based trust and failure prediction.

Binds sessions to durable identities, scores them from their behavior, and
forecasts service failures ahead of time.
"""

from .engine import TrustcastEngine, create_engine
from .features import CacheWarmer, FailurePredictor, TrustLedger

try:
    from importlib.metadata import version

    __version__ = version("trustcast")
except Exception:
    __version__ = "0.0.0"

__all__ = ["CacheWarmer", "FailurePredictor", "TrustLedger", "TrustcastEngine", "create_engine"]
