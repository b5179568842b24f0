"""Per-model tracking configuration and the process-wide registry.

A model is tracked by calling :func:`track` once at setup time (or with the
:func:`versioned` class decorator). The resulting :class:`ModelConfig` is
looked up by the event listeners, the writer and the navigator.
"""
import logging
import warnings
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import RelationshipDirection

from recordtrail.context import switches
from recordtrail.errors import ConfigurationError, InvalidRecordingOrder
from recordtrail.models.version import Version

logger = logging.getLogger(__name__)

EVENTS = ("create", "update", "destroy")
RECORDING_ORDERS = ("before", "after")
TIMESTAMP_COLUMNS = ("updated_at", "updated_on")


class AttributeRule(BaseModel):
    """An attribute name, optionally guarded by a predicate on the record."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    attribute: str
    predicate: Optional[Callable[[Any], Any]] = None


class AttributeRef(BaseModel):
    """``meta`` value read from an attribute of the record being versioned."""

    model_config = ConfigDict(frozen=True)

    name: str


def attribute(name: str) -> AttributeRef:
    return AttributeRef(name=name)


def _coerce_rules(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (str, AttributeRule, Mapping)):
        value = [value]
    rules = []
    for entry in value:
        if isinstance(entry, AttributeRule):
            rules.append(entry)
        elif isinstance(entry, str):
            rules.append(AttributeRule(attribute=entry))
        elif isinstance(entry, Mapping):
            for name, predicate in entry.items():
                if not callable(predicate):
                    raise ValueError(f"condition for {name!r} must be callable")
                rules.append(AttributeRule(attribute=str(name), predicate=predicate))
        else:
            raise ValueError(f"cannot use {entry!r} as an attribute rule")
    return tuple(rules)


class TrackingOptions(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    on: tuple[str, ...] = EVENTS
    ignore: tuple[AttributeRule, ...] = ()
    only: tuple[AttributeRule, ...] = ()
    skip: tuple[AttributeRule, ...] = ()
    meta: dict[str, Any] = Field(default_factory=dict)
    if_: Optional[Callable[[Any], Any]] = None
    unless: Optional[Callable[[Any], Any]] = None
    save_changes: bool = True
    on_destroy: str = "before"
    version_class: Any = None
    polymorphic: dict[str, tuple[str, str]] = Field(default_factory=dict)

    @field_validator("on", mode="before")
    @classmethod
    def _coerce_events(cls, value):
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    @field_validator("on")
    @classmethod
    def _known_events(cls, value):
        unknown = [e for e in value if e not in EVENTS]
        if unknown:
            raise ValueError(f"unknown events {unknown}; expected a subset of {list(EVENTS)}")
        return value

    @field_validator("ignore", "only", "skip", mode="before")
    @classmethod
    def _rules(cls, value):
        return _coerce_rules(value)

    @field_validator("on_destroy")
    @classmethod
    def _recording_order(cls, value):
        if value not in RECORDING_ORDERS:
            raise ValueError('recording order can only be "after" or "before"')
        return value


class ModelConfig:
    """Tracking configuration bound to one mapped class."""

    def __init__(self, model_class: type, options: TrackingOptions):
        self.model_class = model_class
        self.options = options
        self.mapper = inspect(model_class)
        self.item_type = self.mapper.base_mapper.class_.__name__
        self.version_class = options.version_class or Version
        self.column_keys = tuple(prop.key for prop in self.mapper.column_attrs)
        self.primary_key_keys = tuple(
            self.mapper.get_property_by_column(col).key for col in self.mapper.primary_key
        )
        self.timestamp_columns = tuple(k for k in TIMESTAMP_COLUMNS if k in self.column_keys)

    def __repr__(self) -> str:
        return f"<ModelConfig {self.item_type} on={list(self.options.on)}>"

    @property
    def enabled(self) -> bool:
        return _registry.get(self.model_class) is self and switches.snapshot().enabled_for(self.item_type)

    def enable(self) -> None:
        switches.set_enabled_for(self.item_type, True)

    def disable(self) -> None:
        switches.set_enabled_for(self.item_type, False)

    def tracks(self, event_name: str) -> bool:
        return event_name in self.options.on

    def save_version(self, record) -> bool:
        """Evaluate the ``if_`` / ``unless`` conditions."""
        if self.options.if_ is not None and not self.options.if_(record):
            return False
        return not (self.options.unless is not None and self.options.unless(record))

    def item_id(self, record) -> Optional[str]:
        values = self.identity(record)
        if any(v is None for v in values):
            return None
        return ",".join(str(v) for v in values)

    def identity(self, record) -> tuple:
        """Primary key values; taken from the identity key when the record has one."""
        state = inspect(record)
        if state.key is not None:
            return tuple(state.key[1])
        return tuple(state.dict.get(key) for key in self.primary_key_keys)

    def current_attributes(self, record) -> dict[str, Any]:
        """Loaded column values; never triggers a load."""
        loaded = inspect(record).dict
        return {key: loaded[key] for key in self.column_keys if key in loaded}

    def previous_attributes(self, record) -> dict[str, Any]:
        """Column values as they were before the pending changes."""
        state = inspect(record)
        attrs = {}
        for key in self.column_keys:
            history = state.attrs[key].history
            if history.deleted:
                attrs[key] = history.deleted[0]
            elif history.added:
                attrs[key] = None
            elif key in state.dict:
                attrs[key] = state.dict[key]
        return attrs

    def changing(self, record, key: str) -> bool:
        return key in self.column_keys and inspect(record).attrs[key].history.has_changes()

    def load_attributes(self, record) -> None:
        """Make sure every column attribute is loaded (refreshes expired ones)."""
        state = inspect(record)
        if any(key in state.unloaded for key in self.column_keys):
            for key in self.column_keys:
                getattr(record, key)

    def belongs_to(self):
        return [rel for rel in self.mapper.relationships if rel.direction is RelationshipDirection.MANYTOONE]


_registry: dict[type, ModelConfig] = {}


def config_for(obj_or_class) -> Optional[ModelConfig]:
    cls = obj_or_class if isinstance(obj_or_class, type) else type(obj_or_class)
    for klass in cls.__mro__:
        config = _registry.get(klass)
        if config is not None:
            return config
    return None


def config_for_item_type(item_type: str) -> Optional[ModelConfig]:
    for config in _registry.values():
        if config.item_type == item_type:
            return config
    return None


def registered() -> list[ModelConfig]:
    return list(_registry.values())


def track(model_class: type, **options) -> ModelConfig:
    """Start recording versions for ``model_class``.

    Options:

    - ``on``: events to track, any of "create", "update", "destroy" (default all).
    - ``ignore``: attributes whose change alone does not create a version.
      Entries may be ``{name: predicate}`` to ignore only while the predicate
      holds for the record.
    - ``only``: inverse of ignore; same conditional form.
    - ``skip``: like ignore, and also never stored in any version.
    - ``meta``: extra version columns. Values are static, callables taking the
      record, or :func:`attribute` references.
    - ``if_`` / ``unless``: predicates gating every write.
    - ``save_changes``: store diffs in ``object_changes`` (default True).
    - ``on_destroy``: record destroy "before" (default) or "after" the delete.
    - ``version_class``: mapped class using :class:`VersionMixin` (default Version).
    - ``polymorphic``: ``{name: (type_column, id_column)}`` generic associations.
    """
    try:
        inspect(model_class)
    except NoInspectionAvailable:
        raise ConfigurationError(f"{model_class!r} is not a mapped class") from None
    try:
        opts = TrackingOptions(**options)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid tracking options for {model_class.__name__}: {exc}") from exc

    config = ModelConfig(model_class, opts)
    _check_version_columns(config)
    if opts.on_destroy == "after" and _cannot_record_after_destroy(config):
        msg = (
            f"{config.item_type}: on_destroy='after' is incompatible with required "
            "many-to-one associations and has no effect; recording before the delete."
        )
        warnings.warn(msg, InvalidRecordingOrder, stacklevel=2)
        logger.warning(msg)
        config.options = opts.model_copy(update={"on_destroy": "before"})

    from recordtrail import listeners

    _registry[model_class] = config
    listeners.attach(config)
    logger.info("Tracking %s on %s", config.item_type, ", ".join(config.options.on))
    return config


def versioned(**options):
    """Class decorator form of :func:`track`."""

    def decorator(model_class):
        track(model_class, **options)
        return model_class

    return decorator


def untrack(model_class: type) -> None:
    _registry.pop(model_class, None)


def _check_version_columns(config: ModelConfig) -> None:
    table = getattr(config.version_class, "__table__", None)
    if table is None:
        raise ConfigurationError(f"{config.version_class!r} is not a mapped version class")
    missing = [key for key in config.options.meta if key not in table.c]
    if missing:
        raise ConfigurationError(
            f"meta keys {missing} have no matching column on {table.name}"
        )
    for name, (type_col, id_col) in config.options.polymorphic.items():
        if type_col not in config.column_keys or id_col not in config.column_keys:
            raise ConfigurationError(
                f"polymorphic association {name!r} needs columns {type_col!r} and {id_col!r}"
            )


def _cannot_record_after_destroy(config: ModelConfig) -> bool:
    for rel in config.belongs_to():
        if any(not col.nullable for col in rel.local_columns):
            return True
    return False
