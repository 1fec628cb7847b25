from enum import Enum
from typing import Dict, FrozenSet, List


class ClaimStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ADJUDICATED = "adjudicated"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    DENIED = "denied"
    APPEALED = "appealed"
    VOID = "void"


S = ClaimStatus

ALLOWED_TRANSITIONS: Dict[ClaimStatus, FrozenSet[ClaimStatus]] = {
    S.DRAFT: frozenset({S.SUBMITTED, S.VOID}),
    S.SUBMITTED: frozenset({S.ACCEPTED, S.REJECTED, S.VOID}),
    S.ACCEPTED: frozenset({S.ADJUDICATED, S.VOID}),
    S.ADJUDICATED: frozenset({S.PAID, S.PARTIALLY_PAID, S.DENIED, S.VOID}),
    S.DENIED: frozenset({S.APPEALED, S.VOID}),
    S.APPEALED: frozenset({S.ADJUDICATED, S.DENIED, S.VOID}),
    S.REJECTED: frozenset(),
    S.PAID: frozenset(),
    S.PARTIALLY_PAID: frozenset(),
    S.VOID: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[ClaimStatus] = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Claims the status sweep keeps polling
IN_FLIGHT_STATUSES: FrozenSet[ClaimStatus] = frozenset({S.SUBMITTED, S.ACCEPTED})


# Entered only through their own command, never as a step of an implied path
EXPLICIT_ONLY_STATUSES: FrozenSet[ClaimStatus] = frozenset({S.SUBMITTED, S.APPEALED, S.VOID})


def can_transition(from_status: str, to_status: str) -> bool:
    try:
        source = ClaimStatus(from_status)
        target = ClaimStatus(to_status)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS[source]


def path_to(from_status: str, to_status: str) -> List[ClaimStatus]:
    """
    Shortest chain of legal edges leading from from_status to to_status, excluding
    the start. Used when one clearinghouse message skips intermediate states, e.g.
    an ERA paying a claim that was only known as submitted. Returns [] when the
    target is not reachable or equals the start.
    """
    source = ClaimStatus(from_status)
    target = ClaimStatus(to_status)
    if source == target:
        return []

    frontier: List[List[ClaimStatus]] = [[source]]
    seen = {source}
    while frontier:
        next_frontier = []
        for chain in frontier:
            for step in sorted(ALLOWED_TRANSITIONS[chain[-1]] - EXPLICIT_ONLY_STATUSES, key=lambda s: s.value):
                if step in seen:
                    continue
                if step == target:
                    return chain[1:] + [step]
                seen.add(step)
                next_frontier.append(chain + [step])
        frontier = next_frontier
    return []
