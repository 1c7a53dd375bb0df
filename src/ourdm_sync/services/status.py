"""Delivery status graph.

    pending -> sent -> delivered -> read
    pending -> failed -> pending          (retry)
    pending -> scheduled -> pending       (deferred dispatch)
"""

from __future__ import annotations

from ourdm_sync.models.message import (
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_READ,
    STATUS_SCHEDULED,
    STATUS_SENT,
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_SENT, STATUS_FAILED, STATUS_SCHEDULED}),
    STATUS_FAILED: frozenset({STATUS_PENDING}),
    STATUS_SCHEDULED: frozenset({STATUS_PENDING}),
    STATUS_SENT: frozenset({STATUS_DELIVERED}),
    STATUS_DELIVERED: frozenset({STATUS_READ}),
    STATUS_READ: frozenset(),
}

# Rank along the acknowledged path; used for "at or past" checks.
PROGRESS_RANK: dict[str, int] = {
    STATUS_FAILED: 0,
    STATUS_SCHEDULED: 0,
    STATUS_PENDING: 0,
    STATUS_SENT: 1,
    STATUS_DELIVERED: 2,
    STATUS_READ: 3,
}


def can_transition(current: str, target: str) -> bool:
    """Return True if `current -> target` is an edge of the status graph."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_at_or_past(current: str, target: str) -> bool:
    """Return True if `current` has already reached `target` on the acknowledged path."""
    return PROGRESS_RANK.get(current, 0) >= PROGRESS_RANK[target]


def path_to(current: str, target: str) -> list[str]:
    """Return the intermediate and final states needed to reach `target`.

    Only forward moves along sent -> delivered -> read are expanded, so a
    `sent` message marked read passes through `delivered` first. An empty list
    means `target` is unreachable or already reached.
    """
    path: list[str] = []
    state = current
    while state != target:
        forward = [s for s in ALLOWED_TRANSITIONS.get(state, ()) if PROGRESS_RANK[s] > PROGRESS_RANK[state]]
        if not forward:
            return []
        state = forward[0]
        path.append(state)
    return path
