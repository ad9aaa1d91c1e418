from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import func
from sqlalchemy.orm import Session
from contentgate.config import get_settings
from contentgate.database import get_db
from contentgate.models.user import User
from contentgate.models.user_session import UserSession
from contentgate.auth import SESSION_COOKIE, get_current_session_id, get_current_user, start_session, verify_password
from contentgate.schemas.user import UserResponse, LoginRequest, TokenResponse
from contentgate.services.policy import has_entitlement

router = APIRouter(prefix="/api/auth", tags=["auth"])
settings = get_settings()


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest, response: Response, db: Session = Depends(get_db)):
    """Login with email and password. The token is also set as the session cookie."""
    email = body.email.strip().lower()
    user = db.query(User).filter(func.lower(User.email) == email).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not verify_password(body.password, user.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")
    _, token = start_session(db, user)
    db.commit()
    max_age = settings.access_token_expire_minutes * 60
    response.set_cookie(SESSION_COOKIE, token, max_age=max_age, httponly=True, samesite="lax")
    return TokenResponse(access_token=token, expires_in=max_age)


@router.post("/logout")
def logout(
    response: Response,
    session_id: str = Depends(get_current_session_id),
    db: Session = Depends(get_db),
):
    login_session = db.query(UserSession).filter(UserSession.id == session_id).first()
    if login_session and login_session.revoked_at is None:
        login_session.revoked_at = datetime.utcnow()
        login_session.revoked_reason = "logout"
        db.commit()
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserResponse)
def get_me(user: User = Depends(get_current_user)):
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        payment_status=user.payment_status,
        is_active=user.is_active,
        has_entitlement=has_entitlement(user),
        created_at=user.created_at,
    )
