from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.core.database import get_db, get_redis
from app.core.exceptions import AuthenticationError, PermissionDeniedError
from app.core.security import decode_token
from app.modules.users.models import User, AccountStatus
from redis import asyncio as aioredis

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/user/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis)
) -> User:
    """Get current authenticated user from JWT token"""
    payload = decode_token(token)
    user_id = payload.get("sub")
    token_type = payload.get("type")

    if user_id is None or token_type != "access":
        raise AuthenticationError()

    # Check if token has been revoked (logged out)
    if await redis.get(f"blacklist:{payload.get('jti')}"):
        raise AuthenticationError("Token has been revoked")

    try:
        result = await db.execute(select(User).where(User.id == int(user_id)))
    except ValueError:
        raise AuthenticationError()
    user = result.scalar_one_or_none()

    if user is None:
        raise AuthenticationError()

    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """Ensure user account is active"""
    if current_user.account_status != AccountStatus.ACTIVE:
        raise PermissionDeniedError(
            f"Account is {current_user.account_status.value}. Please contact support."
        )
    return current_user
