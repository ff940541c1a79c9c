from __future__ import annotations

from dataclasses import dataclass

from app.backoffice.constants import APPROVAL_APPROVED, APPROVAL_PENDING, ROLE_CUSTOMER, ROLE_STAFF


@dataclass(frozen=True)
class StaffActor:
    id: int
    name: str | None = None


@dataclass(frozen=True)
class CustomerActor:
    id: int
    name: str | None = None


Actor = StaffActor | CustomerActor


def actor_role(actor: Actor) -> str:
    if isinstance(actor, StaffActor):
        return ROLE_STAFF
    if isinstance(actor, CustomerActor):
        return ROLE_CUSTOMER
    raise TypeError(f"Unknown actor type: {type(actor).__name__}")


def initial_approval_state(actor: Actor) -> str:
    """Staff edits apply immediately; customer edits wait for staff acknowledgment."""
    if isinstance(actor, StaffActor):
        return APPROVAL_APPROVED
    if isinstance(actor, CustomerActor):
        return APPROVAL_PENDING
    raise TypeError(f"Unknown actor type: {type(actor).__name__}")


def actor_from_parts(kind: str, actor_id: int | None) -> Actor | None:
    if actor_id is None:
        return None
    if kind == ROLE_STAFF:
        return StaffActor(id=int(actor_id))
    if kind == ROLE_CUSTOMER:
        return CustomerActor(id=int(actor_id))
    raise ValueError(f"Unknown actor role: {kind!r}")


def actor_display_name(actor: Actor) -> str:
    if actor.name:
        return actor.name
    return f"{actor_role(actor)} #{actor.id}"
