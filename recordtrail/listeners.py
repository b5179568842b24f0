"""SQLAlchemy event wiring.

Mapper events on each tracked class are the lifecycle notifications the
writer reacts to; session events close the unit of work. Version rows are
written on the flush connection, so a rollback discards them together with
the change they describe.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import Session, object_session

from recordtrail.context import current_context, switches
from recordtrail.model_config import ModelConfig, config_for
from recordtrail.services import reifier
from recordtrail.services.record_trail import FORCE_UPDATE_ATTR
from recordtrail.services.transaction import TransactionGrouper
from recordtrail.services.version_writer import FAILURES_KEY, VersionWriter, invalidate_versions
from recordtrail.store import VersionStore

logger = logging.getLogger(__name__)

_attached: set[type] = set()
_installed = False


def _writer(config: ModelConfig, connection, target) -> VersionWriter:
    return VersionWriter(
        config,
        VersionStore(connection, config.version_class),
        session=object_session(target),
        context=current_context(),
        snapshot=switches.snapshot(),
    )


def _before_save(mapper, connection, target):
    config = config_for(target)
    if config is None or not reifier.is_reified(target):
        return
    # Only a reified record gets a fresh update timestamp; live ones keep their own.
    now = datetime.now(timezone.utc)
    for column in config.timestamp_columns:
        setattr(target, column, now)


def _after_insert(mapper, connection, target):
    config = config_for(target)
    if config is None:
        return
    reifier.clear_source_version(target)
    if config.tracks("create"):
        _writer(config, connection, target).record_create(target)


def _after_update(mapper, connection, target):
    config = config_for(target)
    if config is None:
        return
    force = vars(target).pop(FORCE_UPDATE_ATTR, False)
    if force or config.tracks("update"):
        _writer(config, connection, target).record_update(target, force=force)
    reifier.clear_source_version(target)


def _before_delete(mapper, connection, target):
    config = config_for(target)
    if config is not None and config.tracks("destroy") and config.options.on_destroy == "before":
        _writer(config, connection, target).record_destroy(target)


def _after_delete(mapper, connection, target):
    config = config_for(target)
    if config is not None and config.tracks("destroy") and config.options.on_destroy == "after":
        _writer(config, connection, target).record_destroy(target)


def _before_flush(session, flush_context, instances):
    # Destroy snapshots need every column; load expired ones before the flush starts.
    for obj in session.deleted:
        config = config_for(obj)
        if config is not None:
            config.load_attributes(obj)


def _after_commit(session):
    TransactionGrouper(session).reset()
    session.info.pop(FAILURES_KEY, None)


def _after_rollback(session):
    for record in TransactionGrouper(session).reset():
        invalidate_versions(record)
    session.info.pop(FAILURES_KEY, None)


def attach(config: ModelConfig) -> None:
    """Register mapper events and active history for a tracked class (once)."""
    cls = config.model_class
    if cls in _attached:
        return
    install()
    event.listen(cls, "after_insert", _after_insert, propagate=True)
    event.listen(cls, "before_insert", _before_save, propagate=True)
    event.listen(cls, "before_update", _before_save, propagate=True)
    event.listen(cls, "after_update", _after_update, propagate=True)
    event.listen(cls, "before_delete", _before_delete, propagate=True)
    event.listen(cls, "after_delete", _after_delete, propagate=True)
    for key in config.column_keys:
        event.listen(getattr(cls, key), "set", _keep_history, active_history=True)
    _attached.add(cls)


def _keep_history(target, value, oldvalue, initiator):
    """No-op; registering it with active_history keeps pre-change values loaded."""


def install() -> None:
    """Register the session-level events. Safe to call more than once."""
    global _installed
    if _installed:
        return
    event.listen(Session, "before_flush", _before_flush)
    event.listen(Session, "after_commit", _after_commit)
    event.listen(Session, "after_rollback", _after_rollback)
    _installed = True
    logger.debug("Session events installed")
