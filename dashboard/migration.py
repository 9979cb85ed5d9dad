"""
Bitaxe Dashboard - Configuration Migration
============================================
Rewrites legacy config.json shapes to the current shape. Runs once at
startup, before the ConfigStore is trusted for serving.

Migrations handled:
    mining_core_url  string (or list with bare strings) -> [{name: url}, ...]
    cryptoNodes      flat per-node objects, each with its own
                     NodeDisplayFields -> [{"Nodes": [...]},
                                           {"NodeDisplayFields": [...]}]

When anything is rewritten, the document is saved and a sentinel record
(.migration_status.json) is written next to it so the dashboard can tell the
operator once. The record is deleted when the client acknowledges it.

Detection treats the current shape as terminal: running migrate() against an
already migrated document changes nothing and writes no record.
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import Any

from dashboard.config import CONFIG_FILENAME, write_json
from dashboard.errors import ConfigError

logger = logging.getLogger(__name__)


MIGRATION_STATUS_FILENAME = ".migration_status.json"

NODE_IDENTITY_FIELDS = ("NodeType", "NodeName", "NodeId", "NodeAlgo")

POOL_URL_MIGRATION = "Mining Core URL structure updated to support multiple instances"
CRYPTO_NODES_MIGRATION = "Crypto Nodes structure updated to new format with shared display fields"


# -- Shape A: mining_core_url ---------------------------------------------------

def needs_pool_url_migration(config: dict) -> bool:
    value = config.get("mining_core_url")
    if not value:
        return False
    if isinstance(value, str):
        return True
    if isinstance(value, list):
        return any(not isinstance(item, dict) or not item for item in value)
    return False


def migrate_pool_url(config: dict) -> dict:
    """Convert mining_core_url into a list of {name: url} objects."""
    value = config["mining_core_url"]
    if isinstance(value, str):
        config["mining_core_url"] = [{"Mining Core": value}]
        return config

    migrated = []
    for item in value:
        if isinstance(item, dict) and item:
            migrated.append(item)
        elif isinstance(item, str) and item:
            name = "Mining Core" if not migrated else f"Mining Core {len(migrated) + 1}"
            migrated.append({name: item})
    config["mining_core_url"] = migrated
    return config


# -- Shape B: cryptoNodes -------------------------------------------------------

def _is_legacy_node(item: Any) -> bool:
    return isinstance(item, dict) and any(item.get(key) for key in NODE_IDENTITY_FIELDS)


def needs_crypto_nodes_migration(config: dict) -> bool:
    value = config.get("cryptoNodes")
    if not isinstance(value, list):
        return False

    has_nodes = any(isinstance(item, dict) and isinstance(item.get("Nodes"), list) for item in value)
    has_fields = any(
        isinstance(item, dict) and isinstance(item.get("NodeDisplayFields"), list) for item in value
    )
    if has_nodes and has_fields:
        return False

    return any(_is_legacy_node(item) for item in value)


def migrate_crypto_nodes(config: dict) -> dict:
    """
    Lift per-node identity fields into a shared Nodes list and keep the first
    NodeDisplayFields list seen as the shared display list.

    Nodes that carried a different display-field list lose it; a warning names
    each one.
    """
    nodes = []
    display_fields: list | None = None

    for item in config["cryptoNodes"]:
        if not _is_legacy_node(item):
            continue
        nodes.append({key: item.get(key) for key in NODE_IDENTITY_FIELDS})

        fields = item.get("NodeDisplayFields")
        if not fields:
            continue
        if display_fields is None:
            display_fields = fields
        elif fields != display_fields:
            logger.warning(
                "Discarding NodeDisplayFields of crypto node '%s': only the first "
                "node's display fields are kept in the shared list",
                item.get("NodeName") or item.get("NodeId"),
            )

    config["cryptoNodes"] = [
        {"Nodes": nodes},
        {"NodeDisplayFields": display_fields or []},
    ]
    logger.info("Migrated %d crypto node(s) to new structure", len(nodes))
    return config


class MigrationEngine:
    """
    Detects and rewrites legacy configuration shapes.

    Attributes:
        config_path: Full path to config.json.
        status_path: Full path to the migration sentinel record.
    """

    def __init__(self, config_dir: str):
        self.config_path = os.path.join(config_dir, CONFIG_FILENAME)
        self.status_path = os.path.join(config_dir, MIGRATION_STATUS_FILENAME)

    def migrate(self) -> bool:
        """
        Migrate config.json in place if it uses a legacy shape.

        Returns:
            True if the document was rewritten.

        Raises:
            ConfigError: If the document exists but cannot be parsed.
        """
        if not os.path.exists(self.config_path):
            logger.info("No %s found - skipping migration", CONFIG_FILENAME)
            return False

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Could not read {self.config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigError(f"{self.config_path} must contain a JSON object")

        applied = []
        if needs_pool_url_migration(config):
            logger.info("Migrating mining_core_url to array format...")
            config = migrate_pool_url(config)
            applied.append(POOL_URL_MIGRATION)

        if needs_crypto_nodes_migration(config):
            logger.info("Migrating cryptoNodes to new structure...")
            config = migrate_crypto_nodes(config)
            applied.append(CRYPTO_NODES_MIGRATION)

        if not applied:
            logger.info("Configuration is up to date - no migration needed")
            return False

        write_json(self.config_path, config, indent=2)
        write_json(self.status_path, {
            "migrated": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "migrations": applied,
        })
        logger.info("Configuration migration completed: %s", "; ".join(applied))
        return True

    def status(self) -> dict | None:
        """The pending migration record, or None if nothing is pending."""
        try:
            with open(self.status_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable migration record %s: %s", self.status_path, e)
            return None

    def clear(self) -> bool:
        """
        Delete the migration record.

        Returns:
            True if a record was deleted, False if none was pending.
        """
        try:
            os.remove(self.status_path)
        except FileNotFoundError:
            return False
        logger.info("Migration status cleared")
        return True
