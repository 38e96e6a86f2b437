from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from clickwork.core.auth import CurrentUser, get_current_user
from clickwork.core.dependencies import get_db
from clickwork.services.accounts import ensure_user


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None


def get_account(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CurrentUser:
    """Authenticated user, mirrored into ``users`` so foreign keys resolve."""
    ensure_user(db, current_user)
    return current_user


def require_account_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_account)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency
