"""
Bitaxe Dashboard - Route Dispatcher
=====================================
Matches each request against an ordered table of RouteDescriptors and runs
the first one that fits.

Matching:
    exact  -> request path (query string excluded) equals the route path
    prefix -> request path starts with the route path
    method -> equal to the route method, or the route method is ANY

The table is first-match-wins, so specific routes must come before broader
overlapping prefixes (e.g. /api/login before /api/).

Errors:
    - fastapi.HTTPException from a handler -> JSON {"message": detail}
    - anything else -> 500 if the response has not started yet; if headers
      were already sent it is only logged. A second response is never written.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from fastapi import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.types import Message, Receive, Scope, Send

from dashboard.auth import AuthGate, Identity
from dashboard.config import ConfigSnapshot
from dashboard.context import Handler, RequestContext, Services

logger = logging.getLogger(__name__)


ANY = "ANY"


class MatchMode(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"


@dataclass(frozen=True)
class RouteDescriptor:
    """
    One entry of a route table.

    Attributes:
        path:            Path (exact) or path prefix.
        method:          HTTP method, or ANY.
        handler:         Coroutine taking a RequestContext.
        match:           MatchMode.EXACT or MatchMode.PREFIX.
        require_auth:    Run the AuthGate first (unless auth is disabled).
        expose_identity: Pass the authenticated Identity to the handler.
    """
    path: str
    method: str
    handler: Handler
    match: MatchMode = MatchMode.EXACT
    require_auth: bool = False
    expose_identity: bool = False

    def matches(self, path: str, method: str) -> bool:
        if self.match is MatchMode.EXACT:
            path_ok = path == self.path
        else:
            path_ok = path.startswith(self.path)
        return path_ok and (self.method == ANY or self.method == method)


def match_route(routes: Sequence[RouteDescriptor], path: str, method: str) -> RouteDescriptor | None:
    """First descriptor in table order that matches, or None."""
    for route in routes:
        if route.matches(path, method):
            return route
    return None


class Dispatcher:
    """
    Runs requests through one route table.

    Attributes:
        routes: The ordered route table.
        gate:   AuthGate for protected routes; None for tables without any
                (bootstrap mode).
    """

    def __init__(self, routes: Sequence[RouteDescriptor], gate: AuthGate | None = None):
        self.routes = tuple(routes)
        self.gate = gate

    def match(self, path: str, method: str) -> RouteDescriptor | None:
        return match_route(self.routes, path, method)

    async def dispatch(self, scope: Scope, receive: Receive, send: Send,
                       snapshot: ConfigSnapshot | None, services: Services) -> None:
        """Handle one HTTP request end to end."""
        request = Request(scope, receive)
        started = False

        async def tracked_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            response = await self._handle(request, snapshot, services)
            await response(scope, receive, tracked_send)
        except Exception:
            logger.exception("ERROR in router for URL %s (%s)", request.url.path, request.method)
            if not started:
                await PlainTextResponse("500 Internal Server Error", status_code=500)(scope, receive, send)
            else:
                logger.error(
                    "Headers already sent for %s (%s), unable to send 500 response",
                    request.url.path, request.method,
                )

    async def _handle(self, request: Request, snapshot: ConfigSnapshot | None,
                      services: Services) -> Response:
        path = request.scope["path"]
        route = self.match(path, request.method)
        if route is None:
            return PlainTextResponse("404 Not Found", status_code=404)

        identity: Identity | None = None
        if route.require_auth and self.gate is not None and snapshot is not None \
                and not snapshot.auth_disabled:
            result = self.gate.check(request)
            if isinstance(result, Response):
                return result
            identity = result

        ctx = RequestContext(
            request=request,
            services=services,
            snapshot=snapshot,
            identity=identity if route.expose_identity else None,
        )
        try:
            return await route.handler(ctx)
        except HTTPException as e:
            return JSONResponse({"message": e.detail}, status_code=e.status_code, headers=e.headers)
