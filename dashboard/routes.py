"""
Bitaxe Dashboard - Route Tables and Handlers
==============================================
All HTTP endpoints, in the two route tables the Gateway can run.

Normal mode (order matters, first match wins):
    GET  /                        dashboard shell          (auth, identity)
    GET  /index.html              dashboard shell          (auth, identity)
    GET  /demo/api/*              canned demo upstream data
    GET  /public/*                static assets
    POST /api/login               exchange credentials for a session cookie
    ANY  /api/logout              clear the session cookie
    GET  /api/systems/info        aggregated miner/pool/node data   (auth)
    GET  /api/instance/info       single device proxy                (auth)
    GET  /api/instance/statistics single device statistics           (auth)
    ANY  /api/instance/service/*  restart / settings push            (auth)
    ANY  /api/configuration       read / update config.json          (auth)
    GET  /api/migration/status    pending migration record           (auth)
    POST /api/migration/clear     acknowledge migration record       (auth)
    ANY  /api/*                   unknown API path -> 404            (auth)
    GET  /login                   login form

Bootstrap mode:
    GET  /public/*                static assets
    POST /api/bootstrap           write initial configuration
    ANY  /*                       setup page
"""

import os
import json
import asyncio
import logging
from typing import Any

from fastapi import HTTPException
from pydantic import BaseModel, Field, ValidationError
from starlette.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response

from dashboard.aggregator import EndpointResult
from dashboard.auth import TokenError, expired_session_cookie, session_cookie
from dashboard.bootstrap import BootstrapRequest, write_initial_config
from dashboard.config import ConfigSnapshot, Endpoint
from dashboard.context import RequestContext
from dashboard.dispatcher import ANY, MatchMode, RouteDescriptor, match_route
from dashboard.errors import ConfigError, CredentialStoreError, UpstreamError

logger = logging.getLogger(__name__)


DEFAULT_TITLE = "Bitaxe Dashboard"

# Demo upstream path -> canned response file in data/demo-apis/
DEMO_API_FILES = {
    "/demo/api/system/info": "bitaxe-info.json",
    "/demo/api/pools": "mining-core.json",
    "/demo/api/system/statistics/dashboard": "statistics.json",
}


class LoginRequest(BaseModel):
    """Login form body. The password is sha256-hashed by the browser."""
    username: str = Field(..., min_length=1)
    hashedPassword: str = Field(..., min_length=1)


# =============================================================================
# Helpers
# =============================================================================

def _require_instance(ctx: RequestContext) -> Endpoint:
    """Resolve ?instanceId= against the snapshot, or raise a 4xx."""
    instance_id = ctx.request.query_params.get("instanceId")
    if not instance_id:
        raise HTTPException(status_code=400, detail='Missing "instanceId" query parameter.')
    endpoint = ctx.snapshot.find_instance(instance_id)
    if endpoint is None:
        raise HTTPException(status_code=404, detail=f'Bitaxe instance "{instance_id}" not found in configuration.')
    return endpoint


async def _read_json_object(ctx: RequestContext, empty_message: str) -> dict:
    """Read the request body as a non-empty JSON object, or raise a 400."""
    body = await ctx.request.body()
    if not body.strip():
        raise HTTPException(status_code=400, detail=empty_message)
    try:
        data = json.loads(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in request body: {e}")
    if not isinstance(data, dict) or not data:
        raise HTTPException(status_code=400, detail="Request body must be a non-empty JSON object.")
    return data


def _pool_entry(result: EndpointResult) -> dict:
    if not result.ok:
        return result.to_json()
    payload = result.payload
    pools = payload.get("pools") if isinstance(payload, dict) else payload
    return {"id": result.name, "pools": pools}


def _page_title(snapshot: ConfigSnapshot | None) -> str:
    if snapshot is None:
        return DEFAULT_TITLE
    return snapshot.document.get("title") or DEFAULT_TITLE


# =============================================================================
# PAGE ROUTES
# =============================================================================

async def dashboard_page(ctx: RequestContext) -> Response:
    """
    Render the dashboard shell.

    ?ec re-enables the configuration editor (only while authentication is on,
    so an anonymous visitor cannot flip it) and redirects to the clean URL.
    """
    request, snapshot = ctx.request, ctx.snapshot

    if "ec" in request.query_params:
        if snapshot.auth_disabled:
            logger.info("Enable configurations parameter ignored - authentication is disabled")
        else:
            try:
                await ctx.services.config_store.update({"disable_configurations": False})
            except ConfigError:
                logger.exception("Error applying enable configurations")
            else:
                logger.info("Enable configurations applied - configurations re-enabled")
                return RedirectResponse(request.scope["path"], status_code=302)

    return ctx.services.templates.TemplateResponse(request, "dashboard.html", {
        "title": _page_title(snapshot),
        "username": ctx.identity.username if ctx.identity else None,
        "auth_disabled": snapshot.auth_disabled,
        "configuration_outdated": snapshot.configuration_outdated,
    })


async def login_page(ctx: RequestContext) -> Response:
    return ctx.services.templates.TemplateResponse(ctx.request, "login.html", {
        "title": _page_title(ctx.snapshot),
    })


async def setup_page(ctx: RequestContext) -> Response:
    return ctx.services.templates.TemplateResponse(ctx.request, "setup.html", {
        "title": DEFAULT_TITLE,
    })


async def public_asset(ctx: RequestContext) -> Response:
    """Serve a file below the public directory; never anything outside it."""
    public_dir = os.path.realpath(ctx.services.public_dir)
    relative = ctx.request.scope["path"][len("/public/"):]
    file_path = os.path.realpath(os.path.join(public_dir, relative))

    if not file_path.startswith(public_dir + os.sep):
        return PlainTextResponse("Forbidden", status_code=403)
    if not os.path.isfile(file_path):
        return PlainTextResponse("Not Found", status_code=404)
    return FileResponse(file_path)


async def demo_api(ctx: RequestContext) -> Response:
    """Canned upstream responses, the target of demo-mode endpoints."""
    path = ctx.request.scope["path"]
    filename = DEMO_API_FILES.get(path)
    if filename is None:
        logger.warning("Demo API: unknown endpoint requested: %s", path)
        return JSONResponse({"message": "The requested demo API endpoint does not exist."}, status_code=404)

    file_path = os.path.join(ctx.services.demo_api_dir, filename)
    if not os.path.isfile(file_path):
        return JSONResponse({"message": f"Demo data file not found: {filename}"}, status_code=404)
    return FileResponse(file_path, media_type="application/json")


# =============================================================================
# AUTH ROUTES
# =============================================================================

async def api_login(ctx: RequestContext) -> Response:
    """Check username/hashedPassword against access.json and set the session cookie."""
    try:
        req = LoginRequest.model_validate(await ctx.request.json())
    except (ValueError, ValidationError):
        return JSONResponse({"message": "Invalid request body"}, status_code=400)

    try:
        valid = await ctx.services.credentials.verify(req.username, req.hashedPassword)
    except CredentialStoreError:
        return JSONResponse({"message": "Server configuration error."}, status_code=500)

    if not valid:
        logger.info("Failed login for user '%s'", req.username)
        return JSONResponse({"message": "Invalid username or password"}, status_code=401)

    tokens = ctx.services.tokens
    token = tokens.create({"username": req.username})
    if isinstance(token, TokenError):
        return JSONResponse({"message": "Could not create session."}, status_code=500)

    logger.info("User '%s' logged in", req.username)
    return JSONResponse(
        {"message": "Login successful"},
        headers={"Set-Cookie": session_cookie(token, tokens.expires_in)},
    )


async def api_logout(ctx: RequestContext) -> Response:
    return JSONResponse(
        {"message": "Logged out"},
        headers={"Set-Cookie": expired_session_cookie()},
    )


# =============================================================================
# DATA ROUTES
# =============================================================================

async def systems_info(ctx: RequestContext) -> Response:
    """
    Aggregate every miner, pool endpoint and blockchain node into one payload.
    One unreachable device becomes one error entry; the response is still 200.
    """
    snapshot = ctx.snapshot
    aggregator = ctx.services.aggregator

    async def pools() -> list[dict] | None:
        if not snapshot.pools_enabled:
            return None
        results = await aggregator.fetch_all(snapshot.pool_endpoints, snapshot.path_for, "pools")
        return [_pool_entry(result) for result in results]

    async def nodes() -> list[dict]:
        if not snapshot.crypto_nodes_enabled:
            return []
        return await aggregator.fetch_nodes(snapshot.crypto_nodes, snapshot.node_display_fields)

    miners, pool_data, node_data = await asyncio.gather(
        aggregator.fetch_all(snapshot.instances, snapshot.path_for, "instanceInfo"),
        pools(),
        nodes(),
    )

    return JSONResponse({
        "minerData": miners.to_json(),
        "displayFields": snapshot.display_fields,
        "miningCoreData": pool_data,
        "miningCoreDisplayFields": snapshot.pool_display_fields,
        "cryptoNodeData": node_data,
        "cryptoNodeDisplayFields": snapshot.node_display_fields,
        "disable_settings": snapshot.settings_disabled,
        "disable_configurations": snapshot.config_disabled,
        "disable_authentication": snapshot.auth_disabled,
        "configuration_outdated": snapshot.configuration_outdated,
    })


async def instance_info(ctx: RequestContext) -> Response:
    """Proxy /api/system/info of one device."""
    endpoint = _require_instance(ctx)
    url = endpoint.url + ctx.snapshot.path_for("instanceInfo")
    try:
        data = await ctx.services.aggregator.request_json("GET", url)
    except UpstreamError as e:
        return JSONResponse(
            {"error": "Failed to fetch data from Bitaxe instance", "message": e.message},
            status_code=e.status_code or 502,
        )
    return JSONResponse(data)


async def instance_statistics(ctx: RequestContext) -> Response:
    """Proxy the dashboard statistics of one device."""
    endpoint = _require_instance(ctx)
    url = endpoint.url + ctx.snapshot.path_for("statisticsDashboard")
    try:
        data = await ctx.services.aggregator.request_json("GET", url)
    except UpstreamError as e:
        logger.warning("Failed to fetch statistics for %s: %s", endpoint.name, e.message)
        return JSONResponse({
            "success": False,
            "message": f"Failed to fetch statistics from {endpoint.name}: {e.message}",
            "instanceId": endpoint.name,
        }, status_code=502)

    return JSONResponse({
        "success": True,
        "instanceId": endpoint.name,
        "instanceUrl": endpoint.url,
        "data": data,
    })


# -- Device services (restart / settings) ---------------------------------------

async def _instance_restart(ctx: RequestContext) -> dict[str, Any]:
    endpoint = _require_instance(ctx)
    url = endpoint.url + ctx.snapshot.path_for("instanceRestart")
    await ctx.services.aggregator.request("POST", url)
    logger.info("Restart initiated for %s", endpoint.name)
    return {"status": "success", "message": f"Restart initiated for {endpoint.name}"}


async def _instance_settings(ctx: RequestContext) -> dict[str, Any]:
    endpoint = _require_instance(ctx)
    settings = await _read_json_object(ctx, "Request body cannot be empty.")
    url = endpoint.url + ctx.snapshot.path_for("instanceSettings")
    await ctx.services.aggregator.request("PATCH", url, json=settings)
    logger.info("Settings updated for %s", endpoint.name)
    return {"status": "success", "message": f"Settings updated for {endpoint.name}"}


SERVICE_ROUTES = (
    RouteDescriptor("/api/instance/service/restart", "POST", _instance_restart),
    RouteDescriptor("/api/instance/service/settings", "PATCH", _instance_settings),
)


async def instance_service(ctx: RequestContext) -> Response:
    """Forward restart / settings commands to a device, unless settings are disabled."""
    if ctx.snapshot.settings_disabled:
        return JSONResponse({"message": "Settings are disabled by configuration."}, status_code=403)

    path = ctx.request.scope["path"]
    route = match_route(SERVICE_ROUTES, path, ctx.request.method)
    if route is None:
        return JSONResponse({"message": f"Service endpoint not found at {path}"}, status_code=404)

    try:
        result = await route.handler(ctx)
    except UpstreamError as e:
        logger.error("Error in instance service %s: %s", path, e.message)
        return JSONResponse({"message": "Upstream device error", "error": e.message}, status_code=502)
    return JSONResponse(result)


# -- Configuration ----------------------------------------------------------------

async def configuration(ctx: RequestContext) -> Response:
    """GET returns the active document; PATCH merges, writes and reloads it."""
    if ctx.snapshot.config_disabled:
        return JSONResponse({"message": "Configurations are disabled by configuration."}, status_code=403)

    method = ctx.request.method
    if method == "GET":
        return JSONResponse({"status": "success", "data": ctx.snapshot.as_document()})

    if method != "PATCH":
        return JSONResponse({"status": "error", "message": f"Method {method} not allowed"}, status_code=405)

    updates = await _read_json_object(
        ctx, "Request body is empty. Please provide configuration settings to update.",
    )
    try:
        updated = await ctx.services.config_store.update(updates)
    except ConfigError as e:
        logger.error("Failed to update configuration: %s", e)
        return JSONResponse({"status": "error", "message": str(e)}, status_code=500)

    return JSONResponse({
        "status": "success",
        "message": "Configuration updated successfully! Changes have been applied immediately.",
        "data": updated,
    })


# -- Migration notice -------------------------------------------------------------

async def migration_status(ctx: RequestContext) -> Response:
    return JSONResponse({"success": True, "data": ctx.services.migrations.status()})


async def migration_clear(ctx: RequestContext) -> Response:
    ctx.services.migrations.clear()
    return JSONResponse({"success": True, "message": "Migration status cleared"})


async def api_not_found(ctx: RequestContext) -> Response:
    return JSONResponse({"message": f"API endpoint not found: {ctx.request.scope['path']}"}, status_code=404)


# =============================================================================
# BOOTSTRAP ROUTES
# =============================================================================

async def bootstrap_submit(ctx: RequestContext) -> Response:
    """Write the initial configuration and signal that setup is complete."""
    try:
        req = BootstrapRequest.model_validate(await ctx.request.json())
    except (ValueError, ValidationError) as e:
        return JSONResponse({"success": False, "message": f"Invalid setup data: {e}"}, status_code=400)

    try:
        await asyncio.to_thread(write_initial_config, ctx.services.config_dir, req)
    except FileExistsError:
        return JSONResponse({"success": False, "message": "Setup has already been completed."}, status_code=409)
    except ValueError as e:
        return JSONResponse({"success": False, "message": str(e)}, status_code=400)

    completed = ctx.services.setup_completed
    if completed is not None and not completed.done():
        completed.set_result(True)

    return JSONResponse({"success": True, "message": "Configuration saved. Redirecting to the dashboard..."})


# =============================================================================
# Route tables
# =============================================================================

NORMAL_ROUTES = (
    RouteDescriptor("/", "GET", dashboard_page, require_auth=True, expose_identity=True),
    RouteDescriptor("/index.html", "GET", dashboard_page, require_auth=True, expose_identity=True),
    RouteDescriptor("/demo/api/", "GET", demo_api, MatchMode.PREFIX),
    RouteDescriptor("/public/", "GET", public_asset, MatchMode.PREFIX),
    RouteDescriptor("/api/login", "POST", api_login),
    RouteDescriptor("/api/logout", ANY, api_logout),
    RouteDescriptor("/api/systems/info", "GET", systems_info, require_auth=True),
    RouteDescriptor("/api/instance/info", "GET", instance_info, require_auth=True),
    RouteDescriptor("/api/instance/statistics", "GET", instance_statistics, require_auth=True),
    RouteDescriptor("/api/instance/service/", ANY, instance_service, MatchMode.PREFIX, require_auth=True),
    RouteDescriptor("/api/configuration", ANY, configuration, require_auth=True),
    RouteDescriptor("/api/migration/status", "GET", migration_status, require_auth=True),
    RouteDescriptor("/api/migration/clear", "POST", migration_clear, require_auth=True),
    RouteDescriptor("/api/", ANY, api_not_found, MatchMode.PREFIX, require_auth=True),
    RouteDescriptor("/login", "GET", login_page),
)

BOOTSTRAP_ROUTES = (
    RouteDescriptor("/public/", "GET", public_asset, MatchMode.PREFIX),
    RouteDescriptor("/api/bootstrap", "POST", bootstrap_submit),
    RouteDescriptor("/", ANY, setup_page, MatchMode.PREFIX),
)
