"""Escrow lifecycle guard.

Uses python-statemachine to enforce legal status transitions at the domain
level. The service instantiates a machine at an escrow's stored status and
fires the lifecycle event before it writes anything; an illegal event
raises TransitionNotAllowed.

Transition table:
    ACTIVE -> COMPLETED   (release)   client completes, provider is paid
    ACTIVE -> CANCELLED   (refund)    a party cancels, client is refunded
    ACTIVE -> CANCELLED   (expire)    anyone, once the deadline has passed
    ACTIVE -> DISPUTED    (dispute)   a party flags a dispute
    ACTIVE -> ACTIVE      (extend)    an extension is requested or approved

COMPLETED and CANCELLED are final. DISPUTED is also final here: no event
resolves a dispute, so nothing may leave it.
"""

from __future__ import annotations

from statemachine import State, StateMachine


class EscrowStateMachine(StateMachine):
    """State machine that guards escrow lifecycle transitions.

    Usage:
        sm = EscrowStateMachine(current_status="ACTIVE")
        sm.release()   # transitions to COMPLETED
        sm.status      # "COMPLETED"
    """

    # --- States ---
    ACTIVE = State("ACTIVE", initial=True)
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    DISPUTED = State("DISPUTED", final=True)

    # --- Events / Transitions ---
    release = ACTIVE.to(COMPLETED)
    refund = ACTIVE.to(CANCELLED)
    expire = ACTIVE.to(CANCELLED)
    dispute = ACTIVE.to(DISPUTED)
    extend = ACTIVE.to.itself()

    def __init__(self, current_status: str = "ACTIVE") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: An EscrowStatus value (e.g., "ACTIVE").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches EscrowStatus)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the names of the events that can fire from the current state."""
        return [event.id for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> str:
    """Fire ``event_name`` on a throwaway machine and return the new status.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is unknown.
    """
    sm = EscrowStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_name not in {e.id for e in sm.events} or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
