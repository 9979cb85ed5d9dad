"""
Bitaxe Dashboard - First-Run Setup
====================================
Writes the initial configuration files when the server starts without a
config/config.json. The setup page posts to /api/bootstrap; once the files
exist the server switches itself to normal mode (see main.Gateway).

Files written:
    config.json           -> instances, pool URLs, explicit safety flags
    access.json           -> {username: sha256(password)}
    jsonWebTokenKey.json  -> random 32 character key, 1 hour lifetime
"""

import os
import secrets
import string
import logging

from pydantic import BaseModel, Field

from dashboard.auth import ACCESS_FILENAME, KEY_FILENAME, hash_password
from dashboard.config import CONFIG_FILENAME, DEFAULT_DASHBOARD_VERSION, write_json

logger = logging.getLogger(__name__)


DEFAULT_TOKEN_LIFETIME = "1h"

DEFAULT_DISPLAY_FIELDS = [
    {"Mining Metrics": [
        {"hashRate": "Hashrate"},
        {"bestDiff": "Best Difficulty"},
        {"sharesAccepted": "Shares Accepted"},
        {"sharesRejected": "Shares Rejected"},
    ]},
    {"Thermal": [
        {"temp": "ASIC Temp"},
        {"vrTemp": "VR Temp"},
        {"fanrpm": "Fan RPM"},
    ]},
]

DEFAULT_POOL_DISPLAY_FIELDS = [
    {"Pool": [
        {"poolHashrate": "Pool Hashrate"},
        {"connectedMiners": "Connected Miners"},
        {"networkDifficulty": "Network Difficulty"},
    ]},
]


class BootstrapRequest(BaseModel):
    """Setup form submission."""
    username: str = Field("admin", min_length=1)
    password: str | None = Field(None, description="Admin password, required unless auth is disabled")
    bitaxe_instances: list[dict[str, str]] = Field(default_factory=list)
    mining_core_url: list[dict[str, str]] = Field(default_factory=list)
    disable_authentication: bool = False
    title: str = "Bitaxe Dashboard"


def generate_jwt_key(length: int = 32) -> str:
    """Random alphanumeric signing key."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def write_initial_config(config_dir: str, req: BootstrapRequest) -> None:
    """
    Create config.json, access.json and jsonWebTokenKey.json.

    Raises:
        FileExistsError: If config.json already exists.
        ValueError:      If authentication is enabled but no password was given.
    """
    config_path = os.path.join(config_dir, CONFIG_FILENAME)
    if os.path.exists(config_path):
        raise FileExistsError(f"{config_path} already exists")

    password = req.password
    if not password:
        if not req.disable_authentication:
            raise ValueError("A password is required when authentication is enabled.")
        # Unknown random password; logins are not used while auth is disabled.
        password = generate_jwt_key()

    write_json(os.path.join(config_dir, ACCESS_FILENAME), {req.username: hash_password(password)})
    write_json(os.path.join(config_dir, KEY_FILENAME), {
        "jsonWebTokenKey": generate_jwt_key(),
        "expiresIn": DEFAULT_TOKEN_LIFETIME,
    })

    # config.json last: its existence is what marks setup as done.
    write_json(config_path, {
        "bitaxe_dashboard_version": DEFAULT_DASHBOARD_VERSION,
        "title": req.title,
        "bitaxe_instances": req.bitaxe_instances,
        "display_fields": DEFAULT_DISPLAY_FIELDS,
        "mining_core_enabled": bool(req.mining_core_url),
        "mining_core_url": req.mining_core_url,
        "mining_core_display_fields": DEFAULT_POOL_DISPLAY_FIELDS,
        "cryptNodesEnabled": False,
        "cryptoNodes": [{"Nodes": []}, {"NodeDisplayFields": []}],
        "disable_authentication": req.disable_authentication,
        "disable_settings": False,
        "disable_configurations": False,
        "demo_mode": False,
    }, indent=4)

    logger.info(
        "Initial configuration written to %s (%d instance(s), authentication %s)",
        config_dir, len(req.bitaxe_instances),
        "disabled" if req.disable_authentication else "enabled",
    )
