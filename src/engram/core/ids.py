"""Id generation and timestamps."""

import random
import time
from datetime import datetime


def generate_id() -> str:
    """Generate a memory id: nanosecond clock followed by 64 random bits, in hex.

    Collision-resistant for a single-user local store. Not cryptographically
    unpredictable, and not sortable across clock adjustments.
    """
    return f"{time.time_ns():x}{random.getrandbits(64):x}"


def now() -> datetime:
    """Current local time, as stored in the database."""
    return datetime.now()
