from __future__ import annotations

import uuid
from typing import Any, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clickwork.services.errors import NotFound

ModelT = TypeVar("ModelT")


def parse_id(value: Any, what: str = "Record") -> uuid.UUID:
    """Parse a UUID, treating malformed ids as unknown ones."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as exc:
        raise NotFound(f"{what} not found") from exc


def with_for_update_if_supported(stmt, db: Session):
    # SQLite has no `SELECT ... FOR UPDATE`; its database-wide write lock serialises writers.
    if db.bind is None or db.bind.dialect.name == "sqlite":
        return stmt
    return stmt.with_for_update()


def same_id(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    try:
        return parse_id(left) == parse_id(right)
    except NotFound:
        return False


class RecordStore:
    """Generic record access over a SQLAlchemy session.

    ``update_where`` is the compare-and-swap primitive: the new values are
    written only if every expected field still holds, in a single UPDATE.
    Nothing here commits; the caller owns the transaction.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_id(self, model: type[ModelT], record_id: Any) -> Optional[ModelT]:
        try:
            key = parse_id(record_id)
        except NotFound:
            return None
        return self.db.get(model, key)

    def lock_by_id(self, model: type[ModelT], record_id: Any) -> Optional[ModelT]:
        """Load a row holding a write lock until the caller's transaction ends."""
        try:
            key = parse_id(record_id)
        except NotFound:
            return None
        stmt = with_for_update_if_supported(select(model).where(model.id == key), self.db)
        return self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    def insert(self, model: type[ModelT], **values: Any) -> ModelT:
        record = model(**values)
        self.db.add(record)
        self.db.flush()
        return record

    def update_where(
        self,
        model: type[ModelT],
        record_id: Any,
        expected: dict[str, Any],
        new_values: dict[str, Any],
    ) -> bool:
        key = parse_id(record_id)
        conditions = [model.id == key]
        conditions.extend(getattr(model, field) == value for field, value in expected.items())
        result = self.db.execute(
            update(model)
            .where(*conditions)
            .values(**new_values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        # The UPDATE bypassed the identity map; reload on next access.
        instance = self.db.get(model, key, populate_existing=True)
        return instance is not None

    def query_by(self, model: type[ModelT], *, order_by: Any = None, limit: Optional[int] = None, **filters: Any) -> list[ModelT]:
        stmt = select(model).filter_by(**filters)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if limit is not None:
            stmt = stmt.limit(int(limit))
        return list(self.db.execute(stmt).scalars().all())
