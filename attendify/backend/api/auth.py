import logging
from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from datetime import datetime, timedelta, timezone
from typing import Optional
import jwt
from pydantic import ValidationError

from .schemas.user import TokenData, UserResponse
from ..models.db_models import User
from ..config.config import settings
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)
# Tokens come from the external auth provider; this service only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=True)

VALID_ROLES = {"admin", "teacher", "student"}


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Signs a JWT with the shared secret. Used by the auth provider integration and by tests."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """
    Decodes and validates the bearer token and returns the caller as a User.
    The token must carry 'sub' and a known 'role'.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        token_data = TokenData.model_validate(payload)
    except (jwt.PyJWTError, ValidationError) as e:
        logger.warning(f"Token validation error: {e}")
        raise credentials_exception

    if token_data.sub is None or token_data.role not in VALID_ROLES:
        logger.warning(f"Token is valid but has no usable 'sub'/'role': {payload}")
        raise credentials_exception

    return User(
        user_id=token_data.sub,
        full_name=token_data.name or token_data.sub,
        role=token_data.role,
        email=token_data.email,
    )


@router.get("/me", response_model=UserResponse)
@limiter.limit("60/minute")
async def read_current_user(request: Request, current_user: User = Depends(get_current_user)):
    """Returns the identity carried by the caller's token."""
    return current_user
