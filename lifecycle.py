"""Batch lifecycle state machine.

A batch's lifecycle position is the pair ``(status, last_actor_role)``
obtained by folding its primary events in ledger order. The same action tag
can mean different things depending on who produced it: ``DELIVERED`` by a
distributor leaves goods at the retailer, ``DELIVERED`` by a retailer from
that position is the sale to a consumer. The transition table below is keyed
by ``(status, last_actor_role, requesting_role)`` so both halves of the key
take part in every decision, and maps each allowed action to the status it
produces.

Nothing here touches the database; callers hand in event-like objects with
``action`` and ``actor_role`` attributes.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from errors import IllegalTransitionError


class Role(str, Enum):
    FARMER = "FARMER"
    DISTRIBUTOR = "DISTRIBUTOR"
    RETAILER = "RETAILER"
    CONSUMER = "CONSUMER"


class Action(str, Enum):
    CREATED = "CREATED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    SOLD = "SOLD"
    PRICE_SET = "PRICE_SET"
    QUALITY_CHECK = "QUALITY_CHECK"
    VERIFIED_ON_CHAIN = "VERIFIED_ON_CHAIN"


class Status(str, Enum):
    CREATED = "CREATED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    SOLD = "SOLD"


PRIMARY_ACTIONS = frozenset({
    Action.CREATED, Action.PICKED_UP, Action.IN_TRANSIT, Action.DELIVERED, Action.SOLD,
})
SIDE_ACTIONS = frozenset({Action.PRICE_SET, Action.QUALITY_CHECK, Action.VERIFIED_ON_CHAIN})
# gated by the transition table; everything else is either reserved or free-form
GATED_ACTIONS = (PRIMARY_ACTIONS | {Action.PRICE_SET, Action.QUALITY_CHECK}) - {Action.CREATED}

DISPLAY_NAMES = {
    Action.CREATED: "Batch Created",
    Action.PICKED_UP: "Picked Up",
    Action.IN_TRANSIT: "In Transit",
    Action.DELIVERED: "Delivered",
    Action.SOLD: "Sold to Consumer",
    Action.PRICE_SET: "Price Updated",
    Action.QUALITY_CHECK: "Quality Checked",
    Action.VERIFIED_ON_CHAIN: "Blockchain Verified",
}


@dataclass(frozen=True)
class Position:
    status: Status
    last_actor_role: Role


Key = Tuple[Status, Role, Role]

_AT_RETAILER = {
    Action.PRICE_SET: Status.DELIVERED,
    Action.QUALITY_CHECK: Status.DELIVERED,
    Action.DELIVERED: Status.SOLD,
    Action.SOLD: Status.SOLD,
}

TRANSITIONS: Dict[Key, Dict[Action, Status]] = {
    (Status.CREATED, Role.FARMER, Role.DISTRIBUTOR): {Action.PICKED_UP: Status.PICKED_UP},
    (Status.PICKED_UP, Role.DISTRIBUTOR, Role.DISTRIBUTOR): {Action.IN_TRANSIT: Status.IN_TRANSIT},
    (Status.IN_TRANSIT, Role.DISTRIBUTOR, Role.DISTRIBUTOR): {Action.DELIVERED: Status.DELIVERED},
    (Status.IN_TRANSIT, Role.DISTRIBUTOR, Role.RETAILER): {Action.DELIVERED: Status.DELIVERED},
    (Status.DELIVERED, Role.DISTRIBUTOR, Role.RETAILER): dict(_AT_RETAILER),
    (Status.DELIVERED, Role.RETAILER, Role.RETAILER): dict(_AT_RETAILER),
}

INITIAL = Position(Status.CREATED, Role.FARMER)


def display_name(action: str) -> str:
    try:
        return DISPLAY_NAMES[Action(action)]
    except ValueError:
        return action.replace("_", " ").title()


def is_gated(action: str) -> bool:
    return action in {a.value for a in GATED_ACTIONS}


def is_primary(action: str) -> bool:
    return action in {a.value for a in PRIMARY_ACTIONS}


def transitions_for(position: Position, role: Role) -> Dict[Action, Status]:
    return TRANSITIONS.get((position.status, position.last_actor_role, Role(role)), {})


def allowed_actions(position: Position, role: Role) -> FrozenSet[Action]:
    """Gated actions ``role`` may append next. Excludes the always-open ones."""
    return frozenset(transitions_for(position, role))


def check_transition(position: Position, role: Role, action: str) -> Position:
    """Validate ``action`` by ``role`` from ``position`` and return the next position.

    Side-branch actions return ``position`` unchanged. Raises
    IllegalTransitionError when the table has no entry.
    """
    role = Role(role)
    table = transitions_for(position, role)
    try:
        next_status = table[Action(action)]
    except (KeyError, ValueError):
        allowed = [a.value for a in table]
        raise IllegalTransitionError(
            f"{role.value} cannot perform {action} when batch is "
            f"{position.status.value} (last by {position.last_actor_role.value})",
            action=action,
            allowed=allowed,
        ) from None
    if not is_primary(action):
        return position
    return Position(next_status, role)


def derive_position(events: Iterable) -> Optional[Position]:
    """Fold a batch's ordered events into its lifecycle position.

    Returns None for an empty history. Non-primary events are skipped, so
    price updates and verifications do not move the batch.
    """
    position = None
    for ev in events:
        if ev.action == Action.CREATED.value:
            position = INITIAL
            continue
        if position is None or not is_gated(ev.action) or not is_primary(ev.action):
            continue
        table = transitions_for(position, ev.actor_role)
        next_status = table.get(Action(ev.action))
        if next_status is None:
            # history written before a rule change; trust what was recorded
            next_status = Status(ev.action) if ev.action in Status.__members__ else position.status
        position = Position(next_status, Role(ev.actor_role))
    return position


def current_status(events) -> Optional[str]:
    """Action tag of the latest event, as shown to users."""
    events = list(events)
    return events[-1].action if events else None
