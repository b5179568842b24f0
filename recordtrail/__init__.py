"""recordtrail: an audit trail for SQLAlchemy models.

Track a mapped class once at setup time::

    from recordtrail import track, trail

    track(Widget, ignore=["color"])

Every create, update and destroy of a ``Widget`` then appends a version row,
and ``trail(widget)`` navigates the history.
"""
from recordtrail.context import (
    TrailContext,
    bind,
    current_context,
    set_controller_info,
    set_enabled_for_request,
    set_whodunnit,
    switches,
    whodunnit,
)
from recordtrail.errors import ConfigurationError, InvalidRecordingOrder, RecordTrailError, WriteFailure
from recordtrail.model_config import (
    AttributeRule,
    ModelConfig,
    TrackingOptions,
    attribute,
    config_for,
    track,
    untrack,
    versioned,
)
from recordtrail.models.version import Version, VersionAssociation, VersionEvent, VersionMixin
from recordtrail.serializers import JSONSerializer, YAMLSerializer, get_serializer, set_serializer
from recordtrail.services.record_trail import (
    RecordTrail,
    is_live,
    originator,
    trail,
    version_at,
    versions_between,
    without,
)
from recordtrail.services.version_writer import write_failures

__version__ = "0.1.0"

__all__ = [
    "AttributeRule",
    "ConfigurationError",
    "InvalidRecordingOrder",
    "JSONSerializer",
    "ModelConfig",
    "RecordTrail",
    "RecordTrailError",
    "TrackingOptions",
    "TrailContext",
    "Version",
    "VersionAssociation",
    "VersionEvent",
    "VersionMixin",
    "WriteFailure",
    "YAMLSerializer",
    "attribute",
    "bind",
    "config_for",
    "current_context",
    "get_serializer",
    "is_live",
    "originator",
    "set_controller_info",
    "set_enabled_for_request",
    "set_serializer",
    "set_whodunnit",
    "switches",
    "track",
    "trail",
    "untrack",
    "version_at",
    "versioned",
    "versions_between",
    "whodunnit",
    "without",
    "write_failures",
]
