"""
Timestamp utilities for consistent time handling across the engine.
"""

import time
from typing import Optional


def to_millis(timestamp: Optional[float] = None) -> int:
    """Convert a timestamp in seconds to integer epoch milliseconds.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        Milliseconds since the epoch
    """
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp * 1000)
