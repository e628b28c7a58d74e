"""
Admin identity checks for lifecycle endpoints.

Session management is handled upstream (the admin dashboard's sign-in layer);
it forwards the signed-in account in the X-Admin-User header. This module
only decides whether that account is an admin.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

from fastapi import Depends, Header, HTTPException, Request

from .config import ADMIN_ACCOUNTS

logger = logging.getLogger(__name__)


class AdminDirectory:
    """Admin accounts resolved once from configuration"""

    def __init__(self, identities: Iterable[str]):
        self._identities = frozenset(i.strip().lower() for i in identities if i and i.strip())

    def is_admin(self, identity: Optional[str]) -> bool:
        if not identity:
            return False
        return identity.strip().lower() in self._identities

    def __len__(self) -> int:
        return len(self._identities)


@lru_cache
def get_admin_directory() -> AdminDirectory:
    directory = AdminDirectory(ADMIN_ACCOUNTS)
    if not len(directory):
        logger.warning("⚠️ No admin accounts configured (ACCOUNTS is empty)")
    return directory


@dataclass(frozen=True)
class AdminIdentity:
    username: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def require_admin(
    request: Request,
    x_admin_user: Optional[str] = Header(None),
    directory: AdminDirectory = Depends(get_admin_directory),
) -> AdminIdentity:
    if not x_admin_user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not directory.is_admin(x_admin_user):
        logger.warning(f"🚫 Non-admin account attempted admin action: {x_admin_user}")
        raise HTTPException(status_code=403, detail="Admin access required")
    return AdminIdentity(
        username=x_admin_user.strip(),
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
