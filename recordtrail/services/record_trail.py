"""Trail navigator: the version history of a single record."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import inspect
from sqlalchemy.orm import object_session
from sqlalchemy.orm.attributes import flag_modified

from recordtrail.context import suppress, whodunnit as whodunnit_context
from recordtrail.errors import ConfigurationError
from recordtrail.model_config import ModelConfig, config_for
from recordtrail.services import reifier
from recordtrail.services.version_writer import VERSIONS_CACHE_ATTR, invalidate_versions
from recordtrail.store import VersionStore, as_utc

logger = logging.getLogger(__name__)

FORCE_UPDATE_ATTR = "_recordtrail_force_update"


class RecordTrail:
    """Navigate and query the versions of ``record``.

    ``record`` may be live, destroyed, or itself reified from a version.
    Reads use ``session`` or, when omitted, the session the record belongs to.
    """

    def __init__(self, record, session=None):
        self.record = record
        self.config: ModelConfig = config_for(record)
        if self.config is None:
            raise ConfigurationError(f"{type(record).__name__} is not tracked")
        self._session = session

    @property
    def session(self):
        session = self._session or object_session(self.record)
        if session is None and self.source_version is not None:
            # Reified records are transient; their source version is not.
            session = object_session(self.source_version)
        if session is None:
            raise ValueError(f"{self.config.item_type} {self.item_id} is not attached to a session")
        return session

    @property
    def item_id(self) -> Optional[str]:
        return self.config.item_id(self.record)

    def _store(self, bind=None) -> VersionStore:
        return VersionStore(bind if bind is not None else self.session, self.config.version_class)

    @property
    def versions(self) -> list:
        """All versions of the record, oldest first. Cached until invalidated."""
        cached = vars(self.record).get(VERSIONS_CACHE_ATTR)
        if cached is None:
            if self.item_id is None:
                return []
            cached = self._store().query(self.config.item_type, self.item_id)
            vars(self.record)[VERSIONS_CACHE_ATTR] = cached
        return cached

    def clear_rolled_back_versions(self) -> None:
        invalidate_versions(self.record)

    @property
    def source_version(self):
        return reifier.source_version(self.record)

    @property
    def live(self) -> bool:
        return self.source_version is None

    def originator(self) -> Optional[str]:
        version = self.source_version
        if version is None:
            versions = self.versions
            version = versions[-1] if versions else None
        return version.whodunnit if version is not None else None

    def reify(self, version):
        """The record as it was just before ``version``; None for a create version."""
        stream = self.versions
        if self.live:
            return reifier.reify(version, stream, self._live_attributes(), self.config, self._store())
        source = self.source_version
        index = self._index(source)
        if self._index(version) >= index:
            return reifier.reify(version, stream, self._live_attributes(), self.config, self._store())
        # The reified attributes are the state after stream[index - 1].
        return reifier.reify(
            version, stream[:index], self.config.current_attributes(self.record), self.config, self._store()
        )

    def previous_version(self):
        versions = self.versions
        if not versions:
            return None
        if self.live:
            return self.reify(versions[-1])
        index = self._index(self.source_version)
        return self.reify(versions[index - 1]) if index > 0 else None

    def next_version(self):
        if self.live:
            return None
        versions = self.versions
        index = self._index(self.source_version)
        if index + 1 < len(versions):
            return self.reify(versions[index + 1])
        return self.session.get(self.config.model_class, self.config.identity(self.record))

    def version_at(self, timestamp: datetime):
        """The record as it was at ``timestamp``.

        A version stores how the record looked *before* its change, so the
        answer is the first version recorded strictly after ``timestamp``.
        """
        moment = as_utc(timestamp)
        for version in self.versions:
            if as_utc(version.created_at) > moment:
                return self.reify(version)
        if not self.live:
            return self.session.get(self.config.model_class, self.config.identity(self.record))
        if reifier.is_destroyed(self.record):
            return None
        return self.record

    def versions_between(self, start: datetime, end: datetime) -> list:
        """The record in each state it was put into between ``start`` and ``end``."""
        if self.item_id is None:
            return []
        versions = self._store().query(self.config.item_type, self.item_id, as_utc(start), as_utc(end))
        return [self.version_at(v.created_at) for v in versions]

    def touch_with_version(self, *names: str):
        """Touch timestamp columns (and ``names``) and always record an update version.

        The version is written regardless of the ``on``, ``if_`` and
        ``unless`` options.
        """
        state = inspect(self.record)
        if not state.persistent:
            raise ValueError("can not touch on a new record object")
        now = datetime.now(timezone.utc)
        columns = list(self.config.timestamp_columns) + list(names)
        for column in columns:
            setattr(self.record, column, now)
        if not columns:
            flag_modified(self.record, next(k for k in self.config.column_keys if k not in self.config.primary_key_keys))
        vars(self.record)[FORCE_UPDATE_ATTR] = True
        try:
            self.session.flush()
        except Exception:
            vars(self.record).pop(FORCE_UPDATE_ATTR, None)
            raise
        return self.record

    @contextmanager
    def whodunnit(self, value) -> Iterator[Any]:
        with whodunnit_context(value):
            yield self.record

    def without_versioning(self, fn: Optional[Callable[[Any], Any]] = None):
        """Run ``fn(record)`` with versioning suspended for this model.

        Without ``fn``, returns a context manager. Writes happen at flush
        time, so flush inside the block. The previous state is restored on
        every exit path.
        """
        if fn is None:
            return suppress(self.config.item_type)
        with suppress(self.config.item_type):
            return fn(self.record)

    def restore(self, session=None):
        """Save a reified record back over the live row (or re-create it).

        Historical update timestamps are not copied; the restored row is
        touched with the current time instead.
        """
        if self.live:
            raise ValueError("record is live; nothing to restore")
        session = session or self.session
        attrs = self.config.current_attributes(self.record)
        for column in self.config.timestamp_columns:
            attrs.pop(column, None)
        target = session.get(self.config.model_class, self.config.identity(self.record))
        if target is None:
            target = self.config.mapper.class_manager.new_instance()
            session.add(target)
        for key, value in attrs.items():
            setattr(target, key, value)
        now = datetime.now(timezone.utc)
        for column in self.config.timestamp_columns:
            setattr(target, column, now)
        reifier.clear_source_version(self.record)
        logger.info("Restored %s %s", self.config.item_type, self.config.item_id(target))
        return target

    def _live_attributes(self) -> dict[str, Any]:
        if self.live:
            if inspect(self.record).persistent:
                self.config.load_attributes(self.record)
            return self.config.current_attributes(self.record)
        live = self.session.get(self.config.model_class, self.config.identity(self.record))
        return self.config.current_attributes(live) if live is not None else {}

    def _index(self, version) -> int:
        for position, candidate in enumerate(self.versions):
            if candidate.id == version.id:
                return position
        raise ValueError(f"{version!r} does not belong to {self.config.item_type} {self.item_id}")


def trail(record, session=None) -> RecordTrail:
    return RecordTrail(record, session)


def version_at(record, timestamp: datetime, session=None):
    return RecordTrail(record, session).version_at(timestamp)


def versions_between(record, start: datetime, end: datetime, session=None) -> list:
    return RecordTrail(record, session).versions_between(start, end)


def originator(record, session=None) -> Optional[str]:
    return RecordTrail(record, session).originator()


def is_live(record) -> bool:
    return not reifier.is_reified(record)


def without(record, op: Callable[[Any], Any]):
    """Run ``op(record)`` with versioning suspended for the record's model."""
    return RecordTrail(record).without_versioning(op)
