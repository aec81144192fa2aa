from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from fastapi import HTTPException, status


class Role(StrEnum):
    ADMIN = "admin"
    AGENT = "agent"
    OFFICE = "office"
    INSTALLER = "installer"
    CUSTOMER = "customer"


@dataclass(frozen=True, slots=True)
class Actor:
    user_id: str
    role: Role
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def resolve_role(roles: Iterable[str]) -> Role | None:
    """Pick the acting CRM role from token claims; admin wins when present."""
    normalized = {str(role).strip().lower() for role in roles}
    if Role.ADMIN.value in normalized:
        return Role.ADMIN
    for role in Role:
        if role.value in normalized:
            return role
    return None


def require_roles(actor: Actor, *roles: Role) -> None:
    if actor.is_admin or actor.role in roles:
        return
    allowed = ", ".join(role.value for role in roles) or Role.ADMIN.value
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Role '{actor.role.value}' is not permitted; requires one of: {allowed}",
    )
