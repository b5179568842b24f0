"""Version writer: builds version rows for create/update/destroy and persists them.

Create and destroy writes are strict: a store error becomes a
:class:`WriteFailure` raised through the flush, which aborts the unit of
work. Update writes run in a savepoint covering the version row, its
transaction tag and its association rows; if any of them is rejected the
whole write rolls back and is logged, kept in
``Session.info`` for :func:`write_failures` and returned to the caller.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError

from recordtrail.context import SwitchSnapshot, TrailContext, current_context, switches
from recordtrail.errors import WriteFailure
from recordtrail.model_config import AttributeRef, ModelConfig, config_for_item_type
from recordtrail.models.version import VersionEvent
from recordtrail.services.classifier import Classification, classify, skipped_attributes
from recordtrail.services.transaction import TransactionGrouper
from recordtrail.store import VersionStore, as_utc

logger = logging.getLogger(__name__)

FAILURES_KEY = "recordtrail.write_failures"
VERSIONS_CACHE_ATTR = "_recordtrail_versions"


def write_failures(session) -> list[WriteFailure]:
    """Update writes the store rejected during this session's unit of work."""
    return list(session.info.get(FAILURES_KEY, []))


def invalidate_versions(record) -> None:
    """Drop a record's cached version list; the next read goes to the store."""
    vars(record).pop(VERSIONS_CACHE_ATTR, None)


class VersionWriter:
    """Writes versions for one record type within one unit of work.

    The context and the switch snapshot are captured once, when the writer
    is built for a lifecycle event, and used for every decision it makes.
    """

    def __init__(
        self,
        config: ModelConfig,
        store: VersionStore,
        session=None,
        context: Optional[TrailContext] = None,
        snapshot: Optional[SwitchSnapshot] = None,
    ):
        self.config = config
        self.store = store
        self.session = session
        self.context = context or current_context()
        self.snapshot = snapshot or switches.snapshot()
        self.grouper = TransactionGrouper(session)

    @property
    def switched_on(self) -> bool:
        return (
            self.snapshot.enabled_for(self.config.item_type)
            and self.context.enabled_for_request
            and not self.context.suppresses(self.config.item_type)
        )

    def classify_create(self, record) -> Classification:
        current = self.config.current_attributes(record)
        previous = {key: None for key in current}
        return classify(previous, current, self.config.options, record, self.config.timestamp_columns)

    def classify_update(self, record) -> Classification:
        return classify(
            self.config.previous_attributes(record),
            self.config.current_attributes(record),
            self.config.options,
            record,
            self.config.timestamp_columns,
        )

    def record_create(self, record) -> Optional[int]:
        if not (self.switched_on and self.config.save_version(record)):
            return None
        change = self.classify_create(record)
        data = self._base_data(record, VersionEvent.create)
        data["created_at"] = self._timestamp(record)
        if self._record_object_changes() and change.notable:
            data["object_changes"] = self._encode_changes(change)
        return self._write(record, data, strict=True)

    def record_update(self, record, force: bool = False) -> Optional[Any]:
        """Write an update version when the change is notable, or always when forced.

        Returns the new version id, a :class:`WriteFailure` when the store
        rejected the row, or None when nothing was written.
        """
        if not self.switched_on:
            return None
        if not force and not self.config.save_version(record):
            return None
        change = self.classify_update(record)
        if not (force or change.notable):
            return None
        data = self._base_data(record, VersionEvent.update)
        data["created_at"] = self._timestamp(record)
        if self._record_object_changes():
            data["object_changes"] = self._encode_changes(change)
        else:
            # Without stored diffs the pre-change snapshot is the only way back.
            data["object"] = self.store.encode("object", self._object_attrs(record))
        try:
            return self._write(record, data, strict=False)
        except WriteFailure as failure:
            logger.error("%s", failure)
            if self.session is not None:
                self.session.info.setdefault(FAILURES_KEY, []).append(failure)
            return failure

    def record_destroy(self, record) -> Optional[int]:
        if not (self.switched_on and self.config.save_version(record)):
            return None
        if not inspect(record).has_identity:
            return None
        data = self._base_data(record, VersionEvent.destroy)
        data["created_at"] = datetime.now(timezone.utc)
        data["object"] = self.store.encode("object", self._object_attrs(record))
        return self._write(record, data, strict=True)

    def _base_data(self, record, event: VersionEvent) -> dict[str, Any]:
        data = {
            "item_type": self.config.item_type,
            "item_id": self.config.item_id(record),
            "event": event,
            "whodunnit": self.context.whodunnit,
        }
        if self.store.column_exists("transaction_id"):
            data["transaction_id"] = self.grouper.current
        return self._merge_metadata(data, record)

    def _timestamp(self, record) -> datetime:
        for column in self.config.timestamp_columns:
            value = self.config.current_attributes(record).get(column)
            if isinstance(value, datetime):
                return as_utc(value)
        return datetime.now(timezone.utc)

    def _record_object_changes(self) -> bool:
        return self.config.options.save_changes and self.store.column_exists("object_changes")

    def _encode_changes(self, change: Classification) -> Any:
        return self.store.encode("object_changes", {k: list(v) for k, v in change.diff.items()})

    def _object_attrs(self, record) -> dict[str, Any]:
        attrs = self.config.previous_attributes(record)
        for key in skipped_attributes(self.config.options, record):
            attrs.pop(key, None)
        return attrs

    def _merge_metadata(self, data: dict[str, Any], record) -> dict[str, Any]:
        for key, value in self.config.options.meta.items():
            if callable(value):
                data[key] = value(record)
            elif isinstance(value, AttributeRef):
                data[key] = self._attribute_value(record, value.name, data["event"])
            else:
                data[key] = value

        for key, value in self.context.controller_info.items():
            if self.store.column_exists(key):
                data[key] = value
            else:
                logger.warning("Dropping metadata %r: no such column on %s", key, self.store.table.name)
        return data

    def _attribute_value(self, record, name: str, event: VersionEvent) -> Any:
        # A changing attribute contributes its pre-change value, except on create.
        if event is not VersionEvent.create and self.config.changing(record, name):
            return self.config.previous_attributes(record).get(name)
        return getattr(record, name)

    def _write(self, record, data: dict[str, Any], strict: bool) -> int:
        """Persist the version row, its transaction tag and its association rows.

        Non-strict writes run all three inside one SAVEPOINT, so a failure in
        any of them leaves neither a partial version nor a claimed
        transaction id behind.
        """
        event = data["event"].value
        try:
            if strict:
                version_id, opened = self._persist(record, data)
            else:
                with self.store.savepoint():
                    version_id, opened = self._persist(record, data)
        except SQLAlchemyError as exc:
            raise WriteFailure(event, self.config.item_type, data["item_id"], exc) from exc
        self.grouper.claim(opened)
        self.grouper.remember(record)
        invalidate_versions(record)
        logger.debug(
            "Recorded %s version %s for %s %s", event, version_id, self.config.item_type, data["item_id"]
        )
        return version_id

    def _persist(self, record, data: dict[str, Any]) -> tuple[int, Optional[int]]:
        version_id = self.store.append(data)
        opened = self.grouper.tag_if_absent(version_id, self.store)
        self._save_associations(version_id, record)
        return version_id, opened

    def _save_associations(self, version_id: int, record) -> None:
        if not self.snapshot.track_associations:
            return
        loaded = self.config.current_attributes(record)
        for rel in self.config.belongs_to():
            target = config_for_item_type(rel.mapper.base_mapper.class_.__name__)
            if target is None or not self.snapshot.enabled_for(target.item_type):
                continue
            for column in rel.local_columns:
                key = self.config.mapper.get_property_by_column(column).key
                self.store.append_association(version_id, column.name, loaded.get(key))

        for name, (type_col, id_col) in self.config.options.polymorphic.items():
            related_type, related_id = loaded.get(type_col), loaded.get(id_col)
            if related_type is None or related_id is None:
                continue
            target = config_for_item_type(related_type)
            if target is None or not self.snapshot.enabled_for(target.item_type):
                continue
            if self._resolvable(target, related_id):
                self.store.append_association(version_id, id_col, related_id)

    def _resolvable(self, target: ModelConfig, related_id: Any) -> bool:
        if len(target.mapper.primary_key) != 1:
            return False
        pk = target.mapper.primary_key[0]
        row = self.store.bind.execute(select(pk).where(pk == related_id)).first()
        return row is not None
