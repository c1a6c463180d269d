"""Who is acting: the identity provider's answer, reduced to what the lifecycle needs."""
from dataclasses import dataclass
from typing import Optional
from sqlalchemy.orm import Session
from ecsrs.models.domain import UserRole
from ecsrs.models.enums import AppRole


@dataclass(frozen=True)
class Actor:
    """An authenticated user. Role and area come from ``user_roles``."""
    id: str
    role: AppRole = AppRole.CITIZEN
    assigned_area_id: Optional[int] = None

    @property
    def is_anonymous(self) -> bool:
        return False

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin


class AnonymousActor:
    """Unauthenticated caller. May submit reports and track them, nothing else."""
    id = None
    role = None
    assigned_area_id = None
    is_anonymous = True
    is_admin = False

    def __repr__(self):
        return "ANONYMOUS"


ANONYMOUS = AnonymousActor()


def resolve_actor(db: Session, user_id: Optional[str]):
    """
    Map an authenticated user id to an Actor.

    Users without a role row are citizens. A missing id means anonymous.
    """
    if not user_id:
        return ANONYMOUS

    role_row = db.query(UserRole).filter(UserRole.user_id == user_id).first()
    if role_row is None:
        return Actor(id=user_id)

    return Actor(
        id=user_id,
        role=role_row.role,
        assigned_area_id=role_row.assigned_area_id
    )
