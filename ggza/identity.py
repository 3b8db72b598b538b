from dataclasses import dataclass

from sqlalchemy.orm import Session

from ggza.config import ADMIN_ROLES
from ggza.errors import ForbiddenError, NotFoundError
from ggza.models import User


@dataclass(frozen=True)
class Identity:
    """A pre-authenticated caller. Core operations never look identity up on their own."""

    user_id: int
    is_verified: bool
    role: str = "verified"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def load_identity(db: Session, user_id: int) -> Identity:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return Identity(user_id=user.id, is_verified=user.is_verified, role=user.role)


def require_verified(identity: Identity) -> None:
    if not identity.is_verified:
        raise ForbiddenError("Account verification is required for scored modes")


def require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise ForbiddenError("Admin role required")
