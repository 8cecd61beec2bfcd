"""Explicit actor context handed to every core operation."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from fastapi import Header, HTTPException


class Role(str, enum.Enum):
    DEVELOPER = "DEVELOPER"
    ADMIN = "ADMIN"
    DIRECTOR = "DIRECTOR"
    ACCOUNTANT = "ACCOUNTANT"
    MANAGER = "MANAGER"
    DISPATCHER = "DISPATCHER"
    OPERATOR = "OPERATOR"
    DRIVER = "DRIVER"


# Roles allowed to open orders (the "creator" side of the workflow)
ORDER_CREATORS = frozenset(
    {Role.MANAGER, Role.OPERATOR, Role.DIRECTOR, Role.DISPATCHER, Role.ADMIN}
)
# Roles allowed to weigh vehicles and write invoices
INVOICE_WRITERS = frozenset({Role.DISPATCHER, Role.OPERATOR, Role.DRIVER, Role.ADMIN})


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role


def get_actor(
    x_actor_id: int = Header(..., ge=1),
    x_actor_role: str = Header(...),
) -> Actor:
    """Build the actor from identity headers set by the upstream auth layer."""
    try:
        role = Role(x_actor_role.strip().upper())
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role '{x_actor_role}'")
    return Actor(id=x_actor_id, role=role)


__all__ = ["Role", "Actor", "ORDER_CREATORS", "INVOICE_WRITERS", "get_actor"]
