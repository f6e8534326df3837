"""
Authentication and authorization dependencies
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import LedgerConfig
from ..system import BankingSystem
from ..users import User


security = HTTPBearer(auto_error=False)


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system


def create_access_token(user_id: str, config: LedgerConfig, role: Optional[str] = None) -> str:
    """Mint a bearer token the way the upstream auth provider does"""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(hours=config.jwt_expiry_hours),
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> User:
    """Dependency that validates the bearer JWT and returns the active user"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    config = system.config
    try:
        if config.auth_enabled:
            payload = jwt.decode(
                credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm]
            )
        else:
            payload = jwt.decode(credentials.credentials, options={"verify_signature": False})
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = system.users.get_user(user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrator privileges required")
    return user
