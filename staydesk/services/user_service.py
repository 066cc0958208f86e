import logging
import re
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from staydesk.core.access import Operation, Role, authorize
from staydesk.core.config import settings
from staydesk.core.errors import AccountInactive, NotFound, ValidationError
from staydesk.core.security import hash_password, verify_password
from staydesk.models.user import User
from staydesk.services import email_service
from staydesk.services.audit_service import log_audit

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")  # plain check; allows .local and other dev domains


def register_user(db: Session, email: str, password: str, full_name: str = "", phone: str = "") -> User:
    """Self-registration always creates a GUEST account."""
    email_l = (email or "").strip().lower()
    if not EMAIL_RE.match(email_l):
        raise ValidationError("invalid email")
    if len(password or "") < 8:
        raise ValidationError("password must be at least 8 characters")
    if db.scalar(select(User.id).where(User.email == email_l)):
        raise ValidationError("email already registered", email=email_l)
    u = User(
        id=str(uuid.uuid4()),
        email=email_l,
        full_name=full_name or "",
        phone=phone or "",
        role=Role.GUEST.value,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.add(u)
    log_audit(db, u.id, "user.register", "user", u.id, {"email": email_l})
    db.commit()
    logger.info("Registered guest %s", email_l)
    email_service.queue_email(db, email_l, f"Welcome to {settings.HOTEL_NAME}",
                              f"Hello {u.full_name or email_l},\n\nYour account is ready. You can now book rooms online.\n\n{settings.HOTEL_NAME}")
    return u


def authenticate(db: Session, email: str, password: str) -> User | None:
    """Return the user for valid credentials, None otherwise."""
    user = db.scalar(select(User).where(User.email == (email or "").strip().lower()))
    if not user or not verify_password(password, user.password_hash):
        return None
    if not user.is_active:
        raise AccountInactive("account is inactive", user_id=user.id)
    return user


def update_user(db: Session, actor: User, user_id: str, role: str | None = None, is_active: bool | None = None,
                full_name: str | None = None) -> User:
    authorize(actor, Operation.MANAGE_USERS)
    u = db.get(User, user_id)
    if not u:
        raise NotFound("user not found", userId=user_id)
    if u.id == actor.id and (is_active is False or (role is not None and role.upper() != actor.role)):
        raise ValidationError("admins cannot demote or deactivate themselves")
    if role is not None:
        try:
            u.role = Role(role.upper()).value
        except ValueError:
            raise ValidationError("invalid role", allowed=[r.value for r in Role])
    if is_active is not None:
        u.is_active = bool(is_active)
    if full_name is not None:
        u.full_name = full_name
    log_audit(db, actor.id, "user.update", "user", u.id, {"role": u.role, "isActive": u.is_active})
    db.commit()
    return u
