"""Engine state: process-wide switches and the per-unit-of-work context.

Switches (global on/off, per-model overrides, association tracking) are
shared by the whole process, change rarely and are read on every lifecycle
event. Readers take one :class:`SwitchSnapshot` per event so a concurrent
toggle is never seen half-applied.

Everything scoped to a request or unit of work (actor, ambient metadata,
request-level enable flag, models suspended by ``without_versioning``) lives
in a :class:`TrailContext` held by a ``ContextVar``. Each thread and each
asyncio task therefore sees its own value.
"""
import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

from recordtrail.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrailContext:
    whodunnit: Optional[str] = None
    controller_info: Mapping[str, Any] = field(default_factory=dict)
    enabled_for_request: bool = True
    suppressed: frozenset = frozenset()

    def suppresses(self, item_type: str) -> bool:
        return item_type in self.suppressed


_CONTEXT: ContextVar[TrailContext] = ContextVar("recordtrail_context", default=TrailContext())


def current_context() -> TrailContext:
    return _CONTEXT.get()


def activate(ctx: TrailContext) -> Token:
    """Install ``ctx`` for the current thread/task. Pair with :func:`deactivate`."""
    return _CONTEXT.set(ctx)


def deactivate(token: Token) -> None:
    _CONTEXT.reset(token)


def reset_context() -> None:
    _CONTEXT.set(TrailContext())


@contextmanager
def bind(**changes) -> Iterator[TrailContext]:
    """Temporarily replace fields of the current context for a block."""
    token = _CONTEXT.set(replace(_CONTEXT.get(), **changes))
    try:
        yield _CONTEXT.get()
    finally:
        _CONTEXT.reset(token)


def set_whodunnit(value: Optional[Any]) -> None:
    _CONTEXT.set(replace(_CONTEXT.get(), whodunnit=None if value is None else str(value)))


def whodunnit(value: Optional[Any]):
    """Context manager: attribute versions written in the block to ``value``."""
    return bind(whodunnit=None if value is None else str(value))


def set_controller_info(info: Mapping[str, Any]) -> None:
    _CONTEXT.set(replace(_CONTEXT.get(), controller_info=dict(info)))


def set_enabled_for_request(value: bool) -> None:
    _CONTEXT.set(replace(_CONTEXT.get(), enabled_for_request=bool(value)))


@contextmanager
def suppress(item_type: str) -> Iterator[TrailContext]:
    """Suspend version writes for ``item_type`` in the current context only."""
    ctx = _CONTEXT.get()
    with bind(suppressed=ctx.suppressed | {item_type}) as inner:
        yield inner


@dataclass(frozen=True)
class SwitchSnapshot:
    enabled: bool
    track_associations: bool
    model_overrides: Mapping[str, bool]

    def enabled_for(self, item_type: str) -> bool:
        return self.enabled and self.model_overrides.get(item_type, True)


class Switches:
    """Process-wide on/off switches guarded by a lock."""

    def __init__(self, enabled: bool = True, track_associations: bool = False):
        self._lock = threading.Lock()
        self._defaults = (enabled, track_associations)
        self._enabled = enabled
        self._track_associations = track_associations
        self._overrides: dict[str, bool] = {}

    def snapshot(self) -> SwitchSnapshot:
        with self._lock:
            return SwitchSnapshot(
                enabled=self._enabled,
                track_associations=self._track_associations,
                model_overrides=MappingProxyType(dict(self._overrides)),
            )

    def set_enabled(self, value: bool) -> None:
        with self._lock:
            self._enabled = bool(value)
        logger.info("Version tracking globally %s", "enabled" if value else "disabled")

    def set_enabled_for(self, item_type: str, value: bool) -> None:
        with self._lock:
            self._overrides[item_type] = bool(value)
        logger.info("Version tracking %s for %s", "enabled" if value else "disabled", item_type)

    def set_track_associations(self, value: bool) -> None:
        with self._lock:
            self._track_associations = bool(value)

    def reset(self) -> None:
        with self._lock:
            self._enabled, self._track_associations = self._defaults
            self._overrides.clear()


switches = Switches(
    enabled=settings.RECORDTRAIL_ENABLED,
    track_associations=settings.TRACK_ASSOCIATIONS,
)
