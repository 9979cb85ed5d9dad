"""
Bitaxe Dashboard - Configuration Store
========================================
Loads the dashboard configuration document (config/config.json) into an
immutable ConfigSnapshot and publishes it to the rest of the server.

Lifecycle:
    uninitialized -> loading -> ready
    ready -> reloading -> ready        (after a configuration update)
    loading -> fatal                   (document unparsable at boot)

A reload builds a brand-new snapshot and swaps the store's reference in one
assignment. Requests that already hold the previous snapshot keep using it
until they finish; the next request sees the new one. A failed reload keeps
the previous snapshot and re-raises to the caller.

Safety flags:
    disable_authentication  -> defaults to False (authentication required)
    disable_settings        -> defaults to True  (device settings blocked)
    disable_configurations  -> defaults to True  (config editing blocked)
    Any flag that had to be defaulted sets configuration_outdated.

Usage:
    store = ConfigStore(config_dir)
    snapshot = await store.load()
    store.on_change(lambda snap: ...)
    await store.update({"display_fields": [...]})   # writes + reloads
"""

import os
import copy
import json
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from dashboard.errors import ConfigError

logger = logging.getLogger(__name__)


CONFIG_FILENAME = "config.json"
RPC_CONFIG_FILENAME = "rpcConfig.json"

# (document key, restrictive default)
SAFETY_FLAGS = (
    ("disable_authentication", False),
    ("disable_settings", True),
    ("disable_configurations", True),
)

DEFAULT_DASHBOARD_VERSION = 2.0

# Logical upstream capability -> concrete path on the device / pool API.
API_PATHS = {
    "instanceInfo": "/api/system/info",
    "pools": "/api/pools",
    "instanceRestart": "/api/system/restart",
    "instanceSettings": "/api/system",
    "statisticsDashboard": "/api/system/statistics/dashboard",
}

# Demo mode serves canned upstream responses from this prefix.
DEMO_PREFIX = "/demo"

DEMO_INSTANCE_NAMES = ("Demo Axe 1", "Demo Axe 2", "Demo Axe 3")
DEMO_POOL_NAME = "Demo Mining Core"


def api_path(kind: str, demo_mode: bool = False) -> str:
    """
    Resolve a logical capability to its upstream path.

    Raises:
        ValueError: If kind is not a known capability.
    """
    try:
        path = API_PATHS[kind]
    except KeyError:
        raise ValueError(f"Unknown API capability '{kind}'") from None
    return DEMO_PREFIX + path if demo_mode else path


class ConfigState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    RELOADING = "reloading"
    FATAL = "fatal"


@dataclass(frozen=True)
class Endpoint:
    """A named upstream device or service."""
    name: str
    url: str


@dataclass(frozen=True)
class RpcCredentials:
    host: str
    port: int | str
    auth: str = field(repr=False)


@dataclass(frozen=True)
class CryptoNode:
    """A blockchain node queried over JSON-RPC."""
    node_id: str
    name: str
    node_type: str | None = None
    algo: str | None = None
    rpc: RpcCredentials | None = None


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    One fully loaded configuration. Never mutated after construction.

    The list-valued display projections are deep copies taken at load time and
    are handed out as copies again, so no caller can alter what another
    request sees.
    """
    instances: tuple[Endpoint, ...]
    pool_endpoints: tuple[Endpoint, ...]
    pools_enabled: bool
    crypto_nodes: tuple[CryptoNode, ...]
    crypto_nodes_enabled: bool
    auth_disabled: bool
    settings_disabled: bool
    config_disabled: bool
    demo_mode: bool
    configuration_outdated: bool
    document: dict = field(repr=False, compare=False)
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_fields(self) -> Any:
        return copy.deepcopy(self.document.get("display_fields") or [])

    @property
    def pool_display_fields(self) -> Any:
        return copy.deepcopy(self.document.get("mining_core_display_fields") or [])

    @property
    def node_display_fields(self) -> list:
        _, fields = split_crypto_nodes(self.document.get("cryptoNodes"))
        return copy.deepcopy(fields)

    def path_for(self, kind: str) -> str:
        """Upstream path for a capability, honouring demo mode."""
        return api_path(kind, self.demo_mode)

    def find_instance(self, name: str | None) -> Endpoint | None:
        if not name:
            return None
        for endpoint in self.instances:
            if endpoint.name == name:
                return endpoint
        return None

    def as_document(self) -> dict:
        """A private copy of the processed configuration document."""
        return copy.deepcopy(self.document)


Listener = Callable[[ConfigSnapshot], None]


class ConfigStore:
    """
    Owns the current ConfigSnapshot for the process.

    Attributes:
        config_dir:    Directory holding config.json and rpcConfig.json.
        config_path:   Full path to config.json.
        demo_base_url: Loopback URL used for every endpoint in demo mode.
        state:         Current ConfigState.
    """

    def __init__(self, config_dir: str, demo_base_url: str = "http://127.0.0.1:3000"):
        self.config_dir = config_dir
        self.config_path = os.path.join(config_dir, CONFIG_FILENAME)
        self.rpc_config_path = os.path.join(config_dir, RPC_CONFIG_FILENAME)
        self.demo_base_url = demo_base_url
        self.state = ConfigState.UNINITIALIZED
        self._snapshot: ConfigSnapshot | None = None
        self._listeners: list[Listener] = []

    def exists(self) -> bool:
        return os.path.exists(self.config_path)

    async def load(self) -> ConfigSnapshot:
        """
        Read config.json, apply defaults, and publish a new snapshot.

        Raises:
            ConfigError: If the document is missing or unparsable. At boot this
                         moves the store to FATAL; after boot the previous
                         snapshot stays published.
        """
        booting = self._snapshot is None
        self.state = ConfigState.LOADING if booting else ConfigState.RELOADING
        logger.info("Loading configuration from %s", self.config_path)

        try:
            document = await asyncio.to_thread(_read_json, self.config_path)
            rpc_config = await asyncio.to_thread(_read_optional_json, self.rpc_config_path)
            snapshot = build_snapshot(document, rpc_config, self.demo_base_url)
        except ConfigError:
            self.state = ConfigState.FATAL if booting else ConfigState.READY
            raise

        self._snapshot = snapshot
        self.state = ConfigState.READY
        logger.info(
            "Configuration loaded: %d instance(s), %d pool endpoint(s), %d node(s)",
            len(snapshot.instances), len(snapshot.pool_endpoints), len(snapshot.crypto_nodes),
        )
        self._notify(snapshot)
        return snapshot

    async def reload(self) -> ConfigSnapshot:
        """Load again. Safe while requests still hold the prior snapshot."""
        logger.info("Reloading configuration...")
        return await self.load()

    def get_snapshot(self) -> ConfigSnapshot:
        """
        Return the current snapshot.

        Raises:
            ConfigError: If no configuration has been loaded yet.
        """
        if self._snapshot is None:
            raise ConfigError("Configuration has not been loaded")
        return self._snapshot

    def on_change(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with each newly published snapshot.

        Returns:
            A callable that unregisters the listener.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def read_document(self) -> dict:
        """Read the raw on-disk document, without defaults applied."""
        return await asyncio.to_thread(_read_json, self.config_path)

    async def update(self, updates: dict) -> dict:
        """
        Shallow-merge updates into the on-disk document, write it and reload.

        Args:
            updates: Top-level keys to replace.

        Returns:
            The document as written.
        """
        current = await self.read_document()
        updated = {**current, **updates}
        if not updated.get("bitaxe_dashboard_version"):
            updated["bitaxe_dashboard_version"] = (
                current.get("bitaxe_dashboard_version") or DEFAULT_DASHBOARD_VERSION
            )

        await asyncio.to_thread(write_json, self.config_path, updated, 4)
        await self.reload()
        return updated

    def _notify(self, snapshot: ConfigSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Error in configuration change listener %r", listener)


# -- Snapshot construction ------------------------------------------------------

def build_snapshot(document: Any, rpc_config: dict | None = None,
                   demo_base_url: str = "http://127.0.0.1:3000") -> ConfigSnapshot:
    """
    Turn a parsed config.json (and optional rpcConfig.json) into a snapshot.

    Raises:
        ConfigError: If the document is not a JSON object.
    """
    if not isinstance(document, dict):
        raise ConfigError("Configuration document must be a JSON object")

    document = copy.deepcopy(document)
    outdated = False
    for key, default in SAFETY_FLAGS:
        if key not in document:
            logger.warning("'%s' not found in config, defaulting to %s.", key, default)
            document[key] = default
            outdated = True
    document["configuration_outdated"] = outdated

    demo_mode = document.get("demo_mode") is True
    if demo_mode:
        instances = tuple(Endpoint(name, demo_base_url) for name in DEMO_INSTANCE_NAMES)
        pools = (Endpoint(DEMO_POOL_NAME, demo_base_url),)
        nodes: tuple[CryptoNode, ...] = ()
    else:
        instances = tuple(parse_endpoints(document.get("bitaxe_instances"), "Bitaxe"))
        pools = tuple(parse_endpoints(document.get("mining_core_url"), "Mining Core"))
        nodes = tuple(parse_crypto_nodes(document.get("cryptoNodes"), rpc_config or {}))

    return ConfigSnapshot(
        instances=instances,
        pool_endpoints=pools,
        pools_enabled=bool(document.get("mining_core_enabled")) and bool(pools),
        crypto_nodes=nodes,
        crypto_nodes_enabled=bool(document.get("cryptNodesEnabled")) and bool(nodes),
        auth_disabled=document["disable_authentication"] is True,
        settings_disabled=document["disable_settings"] is not False,
        config_disabled=document["disable_configurations"] is not False,
        demo_mode=demo_mode,
        configuration_outdated=outdated,
        document=document,
    )


def parse_endpoints(value: Any, default_name: str) -> list[Endpoint]:
    """
    Parse a named-endpoint list: [{"name": "http://host"}, ...].

    A bare string (legacy single endpoint) is accepted as one entry named
    default_name. Entries that are not name/url pairs are skipped, and so is
    a repeated name: the first endpoint with a given name wins.
    """
    if isinstance(value, str):
        return [Endpoint(default_name, value)] if value else []
    if not isinstance(value, list):
        return []

    endpoints = []
    seen = set()
    for item in value:
        if not isinstance(item, dict):
            continue
        for name, url in item.items():
            if not isinstance(url, str) or not url:
                continue
            name = str(name)
            if name in seen:
                logger.warning("Duplicate endpoint name '%s' (%s) ignored; names must be unique", name, url)
                continue
            seen.add(name)
            endpoints.append(Endpoint(name, url.rstrip("/")))
    return endpoints


def split_crypto_nodes(value: Any) -> tuple[list, list]:
    """Return (Nodes, NodeDisplayFields) from the cryptoNodes structure."""
    nodes: list = []
    fields: list = []
    if not isinstance(value, list):
        return nodes, fields
    for item in value:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("Nodes"), list):
            nodes = item["Nodes"]
        if isinstance(item.get("NodeDisplayFields"), list):
            fields = item["NodeDisplayFields"]
    return nodes, fields


def parse_crypto_nodes(value: Any, rpc_config: dict) -> list[CryptoNode]:
    nodes, _ = split_crypto_nodes(value)
    result = []
    for node in nodes:
        if not isinstance(node, dict) or not node.get("NodeId"):
            continue
        node_id = str(node["NodeId"])
        creds = rpc_config.get(node_id)
        rpc = None
        if isinstance(creds, dict) and isinstance(creds.get("rpcHost"), str) \
                and isinstance(creds.get("rpcAuth"), str) and creds["rpcHost"] and creds["rpcAuth"]:
            rpc = RpcCredentials(
                host=creds["rpcHost"],
                port=creds.get("rpcPort", 8332),
                auth=creds["rpcAuth"],
            )
        result.append(CryptoNode(
            node_id=node_id,
            name=node.get("NodeName") or node_id,
            node_type=node.get("NodeType"),
            algo=node.get("NodeAlgo"),
            rpc=rpc,
        ))
    return result


# -- File helpers ---------------------------------------------------------------

def _read_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}") from None
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e


def _read_optional_json(path: str) -> dict | None:
    if not os.path.exists(path):
        return None
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def write_json(path: str, data: Any, indent: int = 2) -> None:
    """Write data as JSON, replacing the file in one rename."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)
    os.replace(tmp_path, path)
