from datetime import datetime, timedelta
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from contentgate.config import get_settings
from contentgate.database import get_db
from contentgate.exceptions import SessionTerminated
from contentgate.models.user import User, UserRole
from contentgate.models.user_session import UserSession
from contentgate.schemas.user import TokenPayload

settings = get_settings()
security = HTTPBearer(auto_error=False)

SESSION_COOKIE = "user_session"

# Use Argon2 for password hashing
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
)

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)

def create_access_token(user_id: str, email: str, session_id: str) -> str:
    expire = datetime.utcnow() + timedelta(
        minutes=settings.access_token_expire_minutes
    )
    payload = {
        "sub": user_id,
        "email": email,
        "sid": session_id,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)

def decode_token(token: str) -> TokenPayload | None:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
        )
        if payload.get("type") != "access":
            return None
        return TokenPayload(
            sub=payload["sub"],
            email=payload["email"],
            sid=payload["sid"],
            exp=payload["exp"],
        )
    except (JWTError, KeyError):
        return None


def start_session(db: Session, user: User) -> tuple[UserSession, str]:
    """Create a login session and the access token bound to it. Caller commits."""
    login = UserSession(user_id=user.id)
    db.add(login)
    db.flush()
    return login, create_access_token(user.id, user.email, login.id)


def _token_from_request(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if credentials:
        return credentials.credentials
    return request.cookies.get(SESSION_COOKIE)


def resolve_session_user(db: Session, payload: TokenPayload) -> tuple[User, UserSession] | None:
    """
    User and login session for a decoded token, or None if either is unknown
    or the user is deactivated. Raises SessionTerminated for a revoked session.
    """
    login = db.query(UserSession).filter(UserSession.id == payload.sid).first()
    if login is None or login.user_id != payload.sub:
        return None
    if login.is_revoked:
        raise SessionTerminated("Session has been terminated. Please log in again.")
    user = db.query(User).filter(User.id == payload.sub).first()
    if not user or not user.is_active:
        return None
    return user, login


def _authenticate(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
    db: Session,
) -> tuple[User, UserSession] | None:
    token = _token_from_request(request, credentials)
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    found = resolve_session_user(db, payload)
    if not found:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    request.state.session_id = found[1].id
    return found


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    found = _authenticate(request, credentials, db)
    if not found:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return found[0]


def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User | None:
    """Anonymous callers get None; a bad or revoked token is still rejected."""
    found = _authenticate(request, credentials, db)
    return found[0] if found else None


def get_current_session_id(
    request: Request,
    user: User = Depends(get_current_user),
) -> str:
    return request.state.session_id


def get_current_user_admin(
    user: User = Depends(get_current_user),
) -> User:
    """User must be logged in and have ADMIN role."""
    if user.role != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admin can access.",
        )
    return user
