from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clickwork.core.auth import CurrentUser
from clickwork.models.marketplace import User
from clickwork.services.errors import NotFound
from clickwork.services.record_store import RecordStore, parse_id


def ensure_user(db: Session, current_user: CurrentUser) -> User:
    """Mirror the authenticated identity into ``users`` the first time it is seen."""
    store = RecordStore(db)
    key = parse_id(current_user.id, "User")
    user = store.find_by_id(User, key)
    if user is not None:
        changed = False
        for attr in ("email", "first_name", "last_name"):
            value = getattr(current_user, attr)
            if value and getattr(user, attr) != value:
                setattr(user, attr, value)
                changed = True
        if changed:
            db.commit()
        return user

    try:
        user = store.insert(
            User,
            id=key,
            email=current_user.email,
            first_name=current_user.first_name,
            last_name=current_user.last_name,
            user_type=current_user.user_type,
        )
        db.commit()
    except IntegrityError:
        # A concurrent first request for the same identity inserted the row first.
        db.rollback()
        user = store.find_by_id(User, key)
        if user is None:
            raise
    return user


def get_user(db: Session, user_id: Any) -> Optional[User]:
    return RecordStore(db).find_by_id(User, user_id)


def require_user(db: Session, user_id: Any) -> User:
    user = get_user(db, user_id)
    if user is None:
        raise NotFound("User not found")
    return user
