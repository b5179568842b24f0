"""Change classifier: decides whether a change is notable and computes its diff.

Pure function of (previous attributes, current attributes, tracking options,
record). Nothing here raises: comparison or predicate failures degrade
towards "not notable".
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from recordtrail.model_config import TIMESTAMP_COLUMNS, AttributeRule, TrackingOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    notable: bool
    changed_keys: frozenset
    diff: Mapping[str, tuple] = field(default_factory=dict)
    ignored_changed: bool = False


def _differs(old: Any, new: Any) -> bool:
    try:
        return bool(old != new)
    except Exception as exc:  # uncomparable values count as unchanged
        logger.warning("Could not compare %r and %r: %s", old, new, exc)
        return False


def changed_keys(previous: Mapping[str, Any], current: Mapping[str, Any]) -> set[str]:
    return {key for key, value in current.items() if _differs(previous.get(key), value)}


def resolve_rules(rules: Iterable[AttributeRule], record: Any, on_error: bool) -> set[str]:
    """Names of the rules that apply to ``record``.

    A predicate that raises counts as ``on_error``.
    """
    names = set()
    for rule in rules:
        if rule.predicate is None:
            names.add(rule.attribute)
            continue
        try:
            applies = bool(rule.predicate(record))
        except Exception as exc:
            logger.warning("Condition for attribute %r failed: %s", rule.attribute, exc)
            applies = on_error
        if applies:
            names.add(rule.attribute)
    return names


def classify(
    previous: Mapping[str, Any],
    current: Mapping[str, Any],
    options: TrackingOptions,
    record: Any = None,
    timestamp_columns: Optional[Iterable[str]] = None,
) -> Classification:
    changed = changed_keys(previous, current)
    ignored = resolve_rules(options.ignore, record, on_error=True)
    skipped = resolve_rules(options.skip, record, on_error=True)

    notably_changed = changed - ignored - skipped
    # Conditional only-rules that all resolve false leave the change unrestricted.
    only = resolve_rules(options.only, record, on_error=False)
    if only:
        notably_changed &= only

    ignored_changed = bool(changed & (ignored | skipped))
    if ignored_changed:
        timestamps = set(TIMESTAMP_COLUMNS if timestamp_columns is None else timestamp_columns)
        notable = bool(notably_changed - timestamps)
    else:
        notable = bool(notably_changed)

    diff = {key: (previous.get(key), current.get(key)) for key in sorted(notably_changed)}
    return Classification(
        notable=notable,
        changed_keys=frozenset(changed),
        diff=diff,
        ignored_changed=ignored_changed,
    )


def skipped_attributes(options: TrackingOptions, record: Any) -> set[str]:
    return resolve_rules(options.skip, record, on_error=True)
