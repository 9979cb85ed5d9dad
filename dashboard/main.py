"""
Bitaxe Dashboard - FastAPI Application
========================================
Creates the FastAPI app and the Gateway that serves every request.

Responsibilities:
    - Decide the server mode at startup: BOOTSTRAP when config/config.json is
      missing, NORMAL otherwise
    - In NORMAL mode, load the session key file before serving anything
      (exit code 1 if it is unusable)
    - In the lifespan: open the shared httpx client, run the migration
      engine, load the configuration store; in BOOTSTRAP mode wait for the
      setup-completed future and then switch to NORMAL
    - Mount the Gateway at "/" so the fixed route table sees every path

Architecture:
    FastAPI app (lifespan, app.state)
      -> Gateway (ASGI, holds the active Dispatcher for the current mode)
           -> Dispatcher (ordered route table, auth gate, error backstop)
                -> handler(RequestContext)
"""

import os
import sys
import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum

import httpx
from fastapi import FastAPI
from fastapi.templating import Jinja2Templates
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from dashboard.aggregator import Aggregator
from dashboard.auth import KEY_FILENAME, AuthGate, CredentialStore, TokenService
from dashboard.config import ConfigStore
from dashboard.context import Services
from dashboard.dispatcher import Dispatcher
from dashboard.errors import ConfigError, KeyFileError
from dashboard.migration import MigrationEngine
from dashboard.routes import BOOTSTRAP_ROUTES, NORMAL_ROUTES
from dashboard.settings import ServerSettings

logger = logging.getLogger(__name__)


REPO_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ServerMode(str, Enum):
    BOOTSTRAP = "bootstrap"
    NORMAL = "normal"


class Gateway:
    """
    ASGI entry point for all HTTP traffic.

    Holds exactly one active Dispatcher. Switching from bootstrap to normal
    mode replaces that reference once; requests already running keep the
    dispatcher they started with.

    Attributes:
        services: Shared Services container.
        mode:     Current ServerMode.
    """

    def __init__(self, services: Services, mode: ServerMode):
        self.services = services
        self.mode = mode
        self._dispatcher = Dispatcher(BOOTSTRAP_ROUTES)
        if mode is ServerMode.NORMAL:
            self._use_normal_routes()

    def _use_normal_routes(self) -> None:
        if self.services.tokens is None:
            self.services.tokens = load_token_service(self.services.config_dir)
        self._dispatcher = Dispatcher(NORMAL_ROUTES, AuthGate(self.services.tokens))
        self.mode = ServerMode.NORMAL

    async def start(self) -> None:
        """Run migrations and load the configuration (NORMAL mode only)."""
        if self.mode is not ServerMode.NORMAL:
            return
        if self.services.migrations.migrate():
            logger.info("Legacy configuration migrated; a notice is pending for the dashboard")
        await self.services.config_store.load()

    async def wait_for_setup(self) -> None:
        """
        Await the setup-completed future once, then switch to NORMAL mode.

        A failure here (unusable configuration or key file) is as fatal as it
        would be at boot, so it is raised out of the event loop.
        """
        await self.services.setup_completed
        logger.info("Setup completed - switching to normal mode")
        try:
            self.services.migrations.migrate()
            await self.services.config_store.load()
            self._use_normal_routes()
        except (ConfigError, KeyFileError) as e:
            logger.critical("FATAL: could not start normal mode after setup: %s", e)
            raise SystemExit(1) from e

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return

        dispatcher = self._dispatcher
        snapshot = None
        if self.mode is ServerMode.NORMAL:
            try:
                snapshot = self.services.config_store.get_snapshot()
            except ConfigError as e:
                logger.error("No configuration available: %s", e)
                response = JSONResponse({"message": "Configuration unavailable."}, status_code=500)
                await response(scope, receive, send)
                return

        await dispatcher.dispatch(scope, receive, send, snapshot, self.services)


def load_token_service(config_dir: str) -> TokenService:
    """
    Raises:
        KeyFileError: If jsonWebTokenKey.json is unusable.
    """
    return TokenService.from_key_file(os.path.join(config_dir, KEY_FILENAME))


def build_services(settings: ServerSettings, web_dir: str,
                   client: httpx.AsyncClient | None = None) -> Services:
    """
    Create the shared components.

    The aggregator has no HTTP client until one is passed here or the
    application lifespan opens one.
    """
    config_dir = settings.config_dir
    return Services(
        config_store=ConfigStore(config_dir, demo_base_url=settings.demo_base_url),
        migrations=MigrationEngine(config_dir),
        credentials=CredentialStore(config_dir),
        aggregator=Aggregator(client),
        templates=Jinja2Templates(directory=os.path.join(web_dir, "templates")),
        config_dir=config_dir,
        public_dir=os.path.join(web_dir, "public"),
        demo_api_dir=os.path.join(settings.data_dir, "demo-apis"),
    )


def create_app(project_dir: str | None = None, web_dir: str | None = None,
               transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """
    Application factory.

    Args:
        project_dir: Directory holding server.yaml, config/ and data/.
                     Defaults to the repository root.
        web_dir:     Directory holding templates/ and public/.
                     Defaults to <repository>/web.
        transport:   Optional httpx transport for upstream calls (tests).

    Returns:
        Configured FastAPI application. Exits the process with status 1 if
        the server is configured but its session key file is unusable.
    """
    project_dir = project_dir or REPO_DIR
    web_dir = web_dir or os.path.join(REPO_DIR, "web")
    settings = ServerSettings.load(project_dir)
    services = build_services(settings, web_dir)

    if services.config_store.exists():
        mode = ServerMode.NORMAL
        try:
            services.tokens = load_token_service(services.config_dir)
        except KeyFileError as e:
            logger.critical("FATAL: Could not load JWT secret key. Authentication will not work.")
            logger.critical("Error: %s", e)
            sys.exit(1)
    else:
        mode = ServerMode.BOOTSTRAP
        logger.info("No configuration found in %s - starting in setup mode", services.config_dir)

    gateway = Gateway(services, mode)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = httpx.AsyncClient(timeout=settings.upstream_timeout, transport=transport)
        services.aggregator.client = client

        watcher = None
        if gateway.mode is ServerMode.NORMAL:
            await gateway.start()
        else:
            services.setup_completed = asyncio.get_running_loop().create_future()
            watcher = asyncio.create_task(gateway.wait_for_setup())

        try:
            yield
        finally:
            if watcher is not None and not watcher.done():
                watcher.cancel()
            await client.aclose()

    app = FastAPI(
        title="Bitaxe Dashboard",
        description="Operator dashboard for a fleet of Bitaxe miners",
        version="2.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.services = services
    app.state.gateway = gateway

    app.mount("/", gateway)
    return app
