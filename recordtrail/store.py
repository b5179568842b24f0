"""Version store backed by a SQLAlchemy Connection (writes) or Session (reads)."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, insert, select, update

from recordtrail.models.version import Version, VersionAssociation
from recordtrail.serializers import from_primitive, get_serializer, to_primitive

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VersionStore:
    """Reads and writes rows of one version table.

    ``bind`` is a Connection inside flush events and a Session everywhere
    else. Reads returning ORM objects need a Session.
    """

    def __init__(self, bind, version_class=Version, serializer=None):
        self.bind = bind
        self.version_class = version_class
        self.table = version_class.__table__
        self.serializer = serializer or get_serializer()

    def column_exists(self, name: str) -> bool:
        return name in self.table.c

    def _is_json(self, name: str) -> bool:
        return isinstance(self.table.c[name].type, JSON)

    def encode(self, column: str, value: Any) -> Any:
        if value is None:
            return None
        if self._is_json(column):
            return to_primitive(value)
        return self.serializer.dump(value)

    def decode(self, column: str, raw: Any) -> Any:
        if raw is None:
            return None
        if self._is_json(column):
            return from_primitive(raw)
        return self.serializer.load(raw)

    def transaction_context_active(self) -> bool:
        return self.bind.in_transaction()

    def append(self, values: dict[str, Any]) -> int:
        """Insert one version row and return its id."""
        result = self.bind.execute(insert(self.table).values(**values))
        return result.inserted_primary_key[0]

    def savepoint(self):
        """A SAVEPOINT on the bind; rolled back if the block raises."""
        return self.bind.begin_nested()

    def tag_transaction(self, version_id: int, transaction_id: int) -> None:
        self.bind.execute(
            update(self.table)
            .where(self.table.c.id == version_id)
            .values(transaction_id=transaction_id)
        )

    def append_association(self, version_id: int, foreign_key_name: str, foreign_key_id: Any) -> None:
        self.bind.execute(
            insert(VersionAssociation.__table__).values(
                version_id=version_id,
                foreign_key_name=foreign_key_name,
                foreign_key_id=None if foreign_key_id is None else str(foreign_key_id),
            )
        )

    def query(
        self,
        item_type: str,
        item_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list:
        """Versions of one item ordered by time, ties broken by id. Bounds are inclusive."""
        cls = self.version_class
        stmt = select(cls).where(cls.item_type == item_type, cls.item_id == str(item_id))
        if start is not None:
            stmt = stmt.where(cls.created_at >= start)
        if end is not None:
            stmt = stmt.where(cls.created_at <= end)
        stmt = stmt.order_by(cls.created_at, cls.id)
        return list(self.bind.execute(stmt).scalars().all())

    def by_transaction(self, transaction_id: int) -> list:
        cls = self.version_class
        stmt = select(cls).where(cls.transaction_id == transaction_id).order_by(cls.id)
        return list(self.bind.execute(stmt).scalars().all())
