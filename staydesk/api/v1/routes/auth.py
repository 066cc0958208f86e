from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from staydesk.db.session import get_db
from staydesk.schemas.auth import LoginRequest, RefreshRequest, RegisterRequest, TokenPair, UserOut
from staydesk.models.user import User
from staydesk.core.security import TokenError, create_access_token, create_refresh_token, decode_token
from staydesk.api.deps import get_current_user
from staydesk.services.user_service import authenticate, register_user

router = APIRouter(tags=["auth"])

def _tokens(user: User) -> TokenPair:
    return TokenPair(
        access_token=create_access_token(user.id),
        refresh_token=create_refresh_token(user.id),
    )

@router.post("/auth/register", response_model=TokenPair, status_code=201)
def register(body: RegisterRequest, db: Session = Depends(get_db)):
    user = register_user(db, body.email, body.password, full_name=body.fullName, phone=body.phone)
    return _tokens(user)

@router.post("/auth/login", response_model=TokenPair)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, body.email, body.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _tokens(user)


@router.post("/auth/refresh", response_model=TokenPair)
def refresh(body: RefreshRequest, db: Session = Depends(get_db)):
    try:
        payload = decode_token(body.refresh_token, expected_type="refresh")
    except TokenError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = db.get(User, payload.get("sub"))
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return _tokens(user)

@router.get("/auth/me", response_model=UserOut)
def me(me: User = Depends(get_current_user)):
    """Return current user info including role."""
    return UserOut.from_model(me)
