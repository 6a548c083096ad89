"""
Trip analytics sink.

Recording is fire-and-forget: a sink failure is logged and never reaches
the shopper.
"""

import json
import logging
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)


class AnalyticsSink(Protocol):
    def record_trip_completion(self, payload: Dict[str, Any]) -> None:
        ...


class LoggingAnalyticsSink:
    """Writes trip completions to the log and keeps them in memory"""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def record_trip_completion(self, payload: Dict[str, Any]) -> None:
        self.records.append(payload)
        logger.info(f"Trip completed: {json.dumps(payload, default=str, sort_keys=True)}")


def record_safely(sink, payload: Dict[str, Any]) -> bool:
    """
    Send a trip completion to the sink without letting failures propagate.

    Returns:
        True if the sink accepted the payload
    """
    if sink is None:
        return False
    try:
        sink.record_trip_completion(payload)
        return True
    except Exception as e:
        logger.error(f"✗ Failed to record trip analytics: {e}")
        return False
