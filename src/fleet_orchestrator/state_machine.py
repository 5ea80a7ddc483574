"""Per-connection lifecycle transitions::

    UNDEPLOYED ─DEPLOY─→ DEPLOYED ─START─→ RUNNING ─STOP─→ STOPPED
                                   ←─────START──────────┘
    DEPLOYED/RUNNING/STOPPED ─UPDATE─→ (same state)
    RUNNING/STOPPED ─PUSH/PULL─→ (same state)
    any deployed state ─DELETE─→ DELETED   (absorbing)

A verb whose target state is already the current state (DEPLOY on
DEPLOYED, START on RUNNING, STOP on STOPPED) resolves as a re-dispatch:
the command goes out again but no transition is recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fleet_orchestrator.errors import PreconditionFailed
from fleet_orchestrator.models import ConnectionControl, ConnectionState

logger = logging.getLogger(__name__)

_DEPLOYED_STATES = frozenset({
    ConnectionState.DEPLOYED,
    ConnectionState.RUNNING,
    ConnectionState.STOPPED,
})

# control → (states it is legal from, resulting state or None for "unchanged")
TRANSITIONS: dict[ConnectionControl, tuple[frozenset, ConnectionState | None]] = {
    ConnectionControl.DEPLOY: (frozenset({ConnectionState.UNDEPLOYED}), ConnectionState.DEPLOYED),
    ConnectionControl.START: (
        frozenset({ConnectionState.DEPLOYED, ConnectionState.STOPPED}),
        ConnectionState.RUNNING,
    ),
    ConnectionControl.STOP: (frozenset({ConnectionState.RUNNING}), ConnectionState.STOPPED),
    ConnectionControl.UPDATE: (_DEPLOYED_STATES, None),
    ConnectionControl.PUSH: (
        frozenset({ConnectionState.RUNNING, ConnectionState.STOPPED}),
        None,
    ),
    ConnectionControl.PULL: (
        frozenset({ConnectionState.RUNNING, ConnectionState.STOPPED}),
        None,
    ),
    ConnectionControl.DELETE: (_DEPLOYED_STATES, ConnectionState.DELETED),
}


@dataclass(frozen=True)
class Transition:
    """A resolved, legal transition."""

    control: ConnectionControl
    from_state: ConnectionState
    to_state: ConnectionState
    redispatch: bool = False

    @property
    def changes_state(self) -> bool:
        return self.from_state != self.to_state


def resolve_transition(current: ConnectionState, control: ConnectionControl) -> Transition:
    """Return the transition *control* causes from *current*.

    Raises
    ------
    PreconditionFailed
        When *control* is not legal from *current*.
    """
    if current is ConnectionState.DELETED:
        raise PreconditionFailed(
            f"Connection is {current.value}; no control is accepted"
        )

    sources, target = TRANSITIONS[control]
    if current in sources:
        return Transition(control, current, target or current)

    if target is not None and current is target:
        logger.debug("Re-dispatching %s for connection already %s", control.value, current.value)
        return Transition(control, current, current, redispatch=True)

    raise PreconditionFailed(
        f"Cannot {control.value} a connection in state {current.value}"
    )


def allowed_controls(current: ConnectionState) -> list[ConnectionControl]:
    """List the verbs that change or re-dispatch from *current*."""
    allowed = []
    for control in ConnectionControl:
        try:
            resolve_transition(current, control)
        except PreconditionFailed:
            continue
        allowed.append(control)
    return allowed
