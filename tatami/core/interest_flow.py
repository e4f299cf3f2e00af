"""Interest lifecycle: INTERESTED → CONTACTED → BOOKED → COMPLETED, forward only."""

from enum import Enum


class InterestStatus(str, Enum):
    INTERESTED = "INTERESTED"
    CONTACTED = "CONTACTED"
    BOOKED = "BOOKED"
    COMPLETED = "COMPLETED"


_ORDER = {status: rank for rank, status in enumerate(InterestStatus)}


def can_transition(current: str, target: str) -> bool:
    """Skipping ahead is allowed; staying put or moving back is not."""
    try:
        return _ORDER[InterestStatus(target)] > _ORDER[InterestStatus(current)]
    except ValueError:
        return False
