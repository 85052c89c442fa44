from __future__ import annotations
import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from talentvote.db import get_session
from talentvote.security import decode_token
from talentvote.models.user import User

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

async def _user_from_token(token: str, session: AsyncSession) -> User:
    try:
        data = decode_token(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if data.get("type") != "access":
        raise HTTPException(status_code=401, detail="Wrong token type")
    try:
        user_id = int(data.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject")
    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session: AsyncSession = Depends(get_session)
) -> User:
    return await _user_from_token(credentials.credentials, session)

async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
    session: AsyncSession = Depends(get_session)
) -> User | None:
    # anonymous payers are allowed; a bad token is still an error
    if credentials is None:
        return None
    return await _user_from_token(credentials.credentials, session)
