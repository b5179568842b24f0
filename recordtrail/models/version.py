"""Version and VersionAssociation ORM models (the append-only change ledger)."""
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, Index, Enum as SAEnum
from sqlalchemy.orm import declared_attr

from recordtrail.database import Base


class VersionEvent(str, enum.Enum):
    create = "create"
    update = "update"
    destroy = "destroy"


class VersionMixin:
    """Columns every version table carries.

    Mix into a declarative class to keep versions of one model in their own
    table, optionally with extra columns for ``meta`` values.
    """

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_type = Column(String(255), nullable=False)
    item_id = Column(String(255), nullable=False)
    event = Column(SAEnum(VersionEvent, native_enum=False, length=16), nullable=False)
    whodunnit = Column(String(255), nullable=True)
    object = Column(Text, nullable=True)
    object_changes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    transaction_id = Column(Integer, nullable=True, index=True)

    @declared_attr
    def __table_args__(cls):
        return (Index(f"ix_{cls.__tablename__}_item", "item_type", "item_id"),)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.event} {self.item_type}#{self.item_id}>"


class Version(VersionMixin, Base):
    __tablename__ = "versions"


class VersionAssociation(Base):
    __tablename__ = "version_associations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(Integer, nullable=False, index=True)
    foreign_key_name = Column(String(255), nullable=False)
    foreign_key_id = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_version_associations_foreign_key", "foreign_key_name", "foreign_key_id"),
    )
