"""Reconstruct historical objects from a version stream.

Every version describes the object as it was *before* the change it
records. Destroy versions (and update versions written without diffs)
carry that state as a full snapshot. Other versions carry only a diff, so
their state is rebuilt by taking the nearest later known state and undoing
diffs newest-first down to and including the target version.
"""
import logging
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import inspect

from recordtrail.model_config import ModelConfig
from recordtrail.models.version import VersionEvent
from recordtrail.store import VersionStore

logger = logging.getLogger(__name__)

SOURCE_VERSION_ATTR = "_recordtrail_source_version"


def apply_diff(attrs: Mapping[str, Any], diff: Mapping[str, Sequence]) -> dict[str, Any]:
    """Return a copy of ``attrs`` with every ``key: (old, new)`` moved to ``new``."""
    result = dict(attrs)
    for key, (_old, new) in diff.items():
        result[key] = new
    return result


def invert(diff: Mapping[str, Sequence]) -> dict[str, tuple]:
    return {key: (new, old) for key, (old, new) in diff.items()}


def undo(attrs: Mapping[str, Any], diff: Mapping[str, Sequence]) -> dict[str, Any]:
    return apply_diff(attrs, invert(diff))


def state_before(
    version,
    stream: Sequence,
    later_state: Mapping[str, Any],
    store: VersionStore,
) -> Optional[dict[str, Any]]:
    """Attributes of the item just before ``version`` took effect.

    ``stream`` is the ordered version list containing ``version``;
    ``later_state`` is the item's state after the last version of ``stream``.
    Returns None for a create version: before it the item did not exist.
    """
    if version.event == VersionEvent.create:
        return None
    index = _index_of(version, stream)
    base = dict(later_state)
    end = len(stream)
    for position in range(index, len(stream)):
        if stream[position].object is not None:
            base = store.decode("object", stream[position].object)
            end = position
            break
    for position in range(end - 1, index - 1, -1):
        diff = store.decode("object_changes", stream[position].object_changes)
        if diff:
            base = undo(base, diff)
        elif stream[position].event == VersionEvent.update:
            logger.warning("Version %s has no diff; reconstruction may be incomplete", stream[position].id)
    return base


def build(config: ModelConfig, attrs: Mapping[str, Any], source_version) -> Any:
    """A transient instance of the tracked class carrying ``attrs``.

    The instance is never added to a session here. It is marked with its
    source version, which makes it non-live until it is saved.
    """
    instance = config.mapper.class_manager.new_instance()
    for key, value in attrs.items():
        if key in config.column_keys:
            setattr(instance, key, value)
        else:
            logger.debug("Dropping unknown attribute %r while reifying %s", key, config.item_type)
    vars(instance)[SOURCE_VERSION_ATTR] = source_version
    return instance


def reify(version, stream: Sequence, later_state: Mapping[str, Any], config: ModelConfig, store: VersionStore):
    attrs = state_before(version, stream, later_state, store)
    if attrs is None:
        return None
    return build(config, attrs, version)


def source_version(record):
    return vars(record).get(SOURCE_VERSION_ATTR)


def is_reified(record) -> bool:
    return source_version(record) is not None


def clear_source_version(record) -> None:
    vars(record).pop(SOURCE_VERSION_ATTR, None)


def _index_of(version, stream: Sequence) -> int:
    for position, candidate in enumerate(stream):
        if candidate is version or candidate.id == version.id:
            return position
    raise ValueError(f"{version!r} is not part of the given version stream")


def is_destroyed(record) -> bool:
    state = inspect(record)
    return state.deleted or state.was_deleted
