"""
Auth dependencies
Bearer tokens for the dashboard API, X-API-Key for external integrations
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from config import get_settings
from database.mongodb import get_database
from models.user import ApiClient, User
from services.auth_service import decode_access_token

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> User:
    """Get current authenticated user from token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_access_token(token)
    if payload is None:
        raise credentials_exception

    user_id: str = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    user_doc = await db.users.find_one({"_id": user_id})
    if user_doc is None:
        raise credentials_exception

    return User(
        id=user_doc["_id"],
        email=user_doc.get("email", ""),
        name=user_doc.get("name"),
        created_at=user_doc.get("created_at")
    )


async def get_api_client(x_api_key: Optional[str] = Header(default=None)) -> ApiClient:
    """Resolve the owner an external API key acts for"""
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include X-API-Key header."
        )

    for key, owner_id in get_settings().external_api_key_owners().items():
        if hmac.compare_digest(key, x_api_key):
            return ApiClient(owner_id=owner_id, key_prefix=x_api_key[:8])

    logger.warning(f"Rejected external API key {x_api_key[:8]}...")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid API key"
    )
