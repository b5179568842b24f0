"""ASGI middleware binding a TrailContext to each HTTP request.

Usage with FastAPI::

    app.add_middleware(TrailContextMiddleware, info_resolver=lambda r: {"ip": r.client.host})

The actor defaults to the ``ACTOR_HEADER`` request header. Versions written
while the request is handled (sync or async endpoints) carry it.
"""
import logging
from typing import Any, Callable, Mapping, Optional

from fastapi import Request

from recordtrail.config import settings
from recordtrail.context import TrailContext, activate, deactivate

logger = logging.getLogger(__name__)


class TrailContextMiddleware:
    def __init__(
        self,
        app,
        actor_header: Optional[str] = None,
        actor_resolver: Optional[Callable[[Request], Any]] = None,
        info_resolver: Optional[Callable[[Request], Mapping[str, Any]]] = None,
        enabled_resolver: Optional[Callable[[Request], bool]] = None,
    ):
        self.app = app
        self.actor_header = actor_header or settings.ACTOR_HEADER
        self.actor_resolver = actor_resolver or self._actor_from_header
        self.info_resolver = info_resolver
        self.enabled_resolver = enabled_resolver

    def _actor_from_header(self, request: Request) -> Optional[str]:
        return request.headers.get(self.actor_header)

    def context_for(self, request: Request) -> TrailContext:
        actor = self.actor_resolver(request)
        info = dict(self.info_resolver(request)) if self.info_resolver else {}
        enabled = bool(self.enabled_resolver(request)) if self.enabled_resolver else True
        return TrailContext(
            whodunnit=None if actor is None else str(actor),
            controller_info=info,
            enabled_for_request=enabled,
        )

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        ctx = self.context_for(Request(scope))
        token = activate(ctx)
        try:
            await self.app(scope, receive, send)
        finally:
            deactivate(token)
