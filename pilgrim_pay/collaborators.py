"""
Boundaries to the systems this service consumes but does not own:
authorization, outbound email and the activity log.
"""
import hashlib
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.config import ADMIN_ROLES
from pilgrim_pay.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: Optional[str] = None


class Authorizer(Protocol):
    def resolve_principal(self, token: str) -> Optional[Principal]: ...

    def is_admin(self, user_id: str) -> bool: ...


class Notifier(Protocol):
    async def send_email(self, to: list[str], subject: str, html: str) -> None: ...


class ActivityRecorder(Protocol):
    def record_event(self, user_id: Optional[str], event_type: str, payload: dict) -> None: ...


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class StaffDirectory:
    """
    Authorizer backed by the ``staff_users`` table (API tokens stored as SHA-256).
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve_principal(self, token: str) -> Optional[Principal]:
        user = (
            self.db.query(models.StaffUser)
            .filter(models.StaffUser.token_hash == hash_token(token))
            .first()
        )
        if not user:
            return None
        return Principal(user_id=user.id, email=user.email)

    def is_admin(self, user_id: str) -> bool:
        user = self.db.get(models.StaffUser, user_id)
        return bool(user and user.role in ADMIN_ROLES)


class DbActivityRecorder:
    def __init__(self, db: Session):
        self.db = db

    def record_event(self, user_id: Optional[str], event_type: str, payload: dict) -> None:
        event = models.ActivityEvent(
            user_id=user_id,
            event_type=event_type,
            booking_id=payload.get("booking_id"),
            package_id=payload.get("package_id"),
            payload=payload,
        )
        self.db.add(event)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("Recorded activity event=%s userId=%s", event_type, user_id)
