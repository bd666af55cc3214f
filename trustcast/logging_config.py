"""Logging setup and structured event helpers.

Modules log through ``logging.getLogger(__name__)``. Domain events (trust
changes, predictions, cache warming, session lifecycle) go through the
helpers below so they share one logger and one key=value layout.
"""

import logging
import sys
from typing import Any, Optional

EVENT_LOGGER_NAME = "trustcast.events"

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure the trustcast logger hierarchy.

    Only the package logger is touched so embedding applications keep
    control of the root logger.
    """
    package_logger = logging.getLogger("trustcast")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(h, "_trustcast", False) for h in package_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._trustcast = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the trustcast namespace."""
    if not name.startswith("trustcast"):
        name = f"trustcast.{name}"
    return logging.getLogger(name)


def _event_logger() -> logging.Logger:
    return logging.getLogger(EVENT_LOGGER_NAME)


def _fmt(fields: dict[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)


def log_trust_change(
    identity_anchor: str,
    previous_level: int,
    new_level: int,
    previous_score: float,
    new_score: float,
    trigger: str,
) -> None:
    """Log a recorded trust transition."""
    _event_logger().info(
        "trust_change "
        + _fmt(
            {
                "anchor": identity_anchor,
                "level": f"{previous_level}->{new_level}",
                "score": f"{previous_score:.2f}->{new_score:.2f}",
                "trigger": trigger,
            }
        )
    )


def log_prediction(
    prediction_id: str,
    service_name: str,
    prediction_type: str,
    confidence: float,
    stored: bool,
) -> None:
    """Log an emitted prediction and whether it was persisted."""
    level = logging.INFO if stored else logging.WARNING
    _event_logger().log(
        level,
        "prediction "
        + _fmt(
            {
                "id": prediction_id,
                "service": service_name,
                "type": prediction_type,
                "confidence": f"{confidence:.2f}",
                "stored": stored,
            }
        ),
    )


def log_cache_warm(source: str, written: int, skipped: int = 0) -> None:
    """Log the result of a warming pass."""
    _event_logger().info(
        "cache_warm " + _fmt({"source": source, "written": written, "skipped": skipped})
    )


def log_session_event(
    session_id: str,
    event: str,
    identity_anchor: Optional[str] = None,
    detail: Optional[str] = None,
) -> None:
    """Log a binding lifecycle event (bound, resumed, unbound, committed)."""
    _event_logger().info(
        "session "
        + _fmt({"event": event, "session": session_id, "anchor": identity_anchor, "detail": detail})
    )
