"""
Shared pieces of the two stage consumers.
"""
import enum
from datetime import timedelta

STAGE_IMAGE = "image"
STAGE_AI = "ai"


class StageOutcome(str, enum.Enum):
    """What the broker should do with the message once a consumer returns."""
    ACK = "ack"
    # negative-acknowledge without requeue
    REJECT = "reject"


def describe_error(error: Exception) -> str:
    """Message stored on the job; falls back to the exception type when empty."""
    return str(error) or error.__class__.__name__


def claim_window(stale_after: timedelta, redelivered: bool) -> timedelta:
    """
    Age a Processing claim must exceed before another delivery may take it.
    A redelivered message means the holder never acknowledged and is gone.
    """
    return timedelta(0) if redelivered else stale_after
