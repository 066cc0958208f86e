import logging
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from staydesk.db.session import get_db
from staydesk.core.access import Operation, authorize
from staydesk.core.config import settings
from staydesk.core.errors import GatewayError
from staydesk.core.security import TokenError, decode_token
from staydesk.models.user import User
from staydesk.services.gateway_client import build_gateway_client

logger = logging.getLogger(__name__)
bearer = HTTPBearer(auto_error=False)

def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except TokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(User, payload.get("sub"))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    # Inactive accounts still authenticate; the access guard rejects them with AccountInactive.
    return user

def require(operation: Operation):
    """Route-level capability check; ownership is checked again by the service."""
    def _guard(user: User = Depends(get_current_user)) -> User:
        authorize(user, operation)
        return user
    return _guard

def get_gateway():
    return build_gateway_client(settings)

def get_optional_gateway():
    """For flows that only call the gateway to refund card payments."""
    try:
        return build_gateway_client(settings)
    except GatewayError as e:
        logger.warning("Card gateway unavailable: %s", e)
        return None
