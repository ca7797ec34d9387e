"""
Request dependencies.

Authentication happens upstream; the gateway forwards the verified caller
as X-User-Id / X-User-Role headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ..models.user import UserRole
from .logging_config import actor_id_var


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = UserRole.MEMBER.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def get_current_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None)
) -> Actor:
    """Resolve the caller from trusted gateway headers"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity"
        )

    role = (x_user_role or UserRole.MEMBER.value).lower()
    if role not in (UserRole.MEMBER.value, UserRole.ADMIN.value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role: {role}"
        )

    actor_id_var.set(x_user_id)
    return Actor(user_id=x_user_id, role=role)


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return actor
