"""Payment-order state machine enforced by the reconciliation engine.

`paid` is terminal. `failed` only records the latest attempt outcome: a
verified capture on the same gateway order still moves it to `paid`.
"""

CREATED = "created"
PAID = "paid"
FAILED = "failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    CREATED: {PAID, FAILED},
    FAILED: {PAID},
    PAID: set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise ValueError(f"Invalid transition: {current} -> {new}")
