"""
Bitaxe Dashboard - Request Context
====================================
The objects every route handler receives.

Services is built once at startup and shared by all requests. RequestContext
is built per request by the dispatcher; its snapshot is the configuration the
request started with, even if a reload happens while it is running.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi.templating import Jinja2Templates
from starlette.requests import Request
from starlette.responses import Response

from dashboard.aggregator import Aggregator
from dashboard.auth import CredentialStore, Identity, TokenService
from dashboard.config import ConfigSnapshot, ConfigStore
from dashboard.migration import MigrationEngine


@dataclass
class Services:
    """
    Long-lived components shared across requests.

    Attributes:
        config_store:    Publishes ConfigSnapshots.
        migrations:      Migration engine / sentinel record access.
        credentials:     access.json reader for logins.
        aggregator:      Outbound HTTP (fan-out, proxy, RPC).
        templates:       Jinja2 page renderer.
        config_dir:      Directory holding the JSON configuration files.
        public_dir:      Directory served under /public/.
        demo_api_dir:    Directory holding canned demo API responses.
        tokens:          Session token service; None until normal mode.
        setup_completed: Resolved by the bootstrap handler once the initial
                         configuration files are written.
    """
    config_store: ConfigStore
    migrations: MigrationEngine
    credentials: CredentialStore
    aggregator: Aggregator
    templates: Jinja2Templates
    config_dir: str
    public_dir: str
    demo_api_dir: str
    tokens: TokenService | None = None
    setup_completed: asyncio.Future | None = None


@dataclass(frozen=True)
class RequestContext:
    """
    Everything a handler may use.

    identity is only filled in for routes declared with expose_identity, and
    only when authentication actually ran.
    """
    request: Request
    services: Services
    snapshot: ConfigSnapshot | None = None
    identity: Identity | None = None


Handler = Callable[[RequestContext], Awaitable[Response]]
