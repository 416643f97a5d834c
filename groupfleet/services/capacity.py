# groupfleet/services/capacity.py
"""
Capacity policy - decides when a group is full or close enough to full that the
next group of its series should be opened.

Pure functions, no I/O. A non-positive ``max_participants`` is treated as 100%
occupancy so a misconfigured group triggers provisioning instead of silently
overflowing.
"""
from typing import NamedTuple


class CapacityReport(NamedTuple):
    participant_count: int
    max_participants: int
    threshold_percentage: float
    occupancy: float
    is_full: bool
    is_near_capacity: bool

    @property
    def should_create_next(self) -> bool:
        return self.is_near_capacity or self.is_full


def get_occupancy(count: int, max_participants: int) -> float:
    """Occupancy in percent (``count / max * 100``)."""
    if max_participants is None or max_participants <= 0:
        return 100.0
    return count / max_participants * 100


def is_full(count: int, max_participants: int) -> bool:
    if max_participants is None or max_participants <= 0:
        return True
    return count >= max_participants


def is_near_capacity(count: int, max_participants: int, threshold_percentage: float) -> bool:
    return get_occupancy(count, max_participants) >= threshold_percentage


def should_create_next(count: int, max_participants: int, threshold_percentage: float) -> bool:
    return is_near_capacity(count, max_participants, threshold_percentage) or is_full(count, max_participants)


def evaluate(count: int, max_participants: int, threshold_percentage: float) -> CapacityReport:
    return CapacityReport(
        participant_count=count,
        max_participants=max_participants,
        threshold_percentage=threshold_percentage,
        occupancy=get_occupancy(count, max_participants),
        is_full=is_full(count, max_participants),
        is_near_capacity=is_near_capacity(count, max_participants, threshold_percentage),
    )
