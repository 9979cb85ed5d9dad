"""
Bitaxe Dashboard - Server Settings
====================================
Process-level settings for the dashboard server, read from server.yaml.

These are distinct from the dashboard configuration document
(config/config.json, see config.py): server.yaml only describes how the
process itself runs (bind address, directories, upstream timeout).

Resolution order (later wins):
    1. DEFAULTS below
    2. server.yaml in the project directory
    3. HOST / PORT environment variables (.env is loaded by app.py)
"""

import os
import copy
import logging
import yaml
from typing import Any

logger = logging.getLogger(__name__)


DEFAULTS = {
    "web": {
        "host": "0.0.0.0",
        "port": 3000,
    },
    "paths": {
        "config_dir": "config",
        "data_dir": "data",
    },
    "upstream": {
        # Seconds. None means no deadline beyond the transport's own.
        "timeout": None,
    },
    "demo": {
        # Loopback URL the demo endpoints point at. None -> http://127.0.0.1:<port>
        "base_url": None,
    },
}


class ServerSettings:
    """
    Resolved process settings.

    Attributes:
        project_dir: Root directory holding server.yaml, config/ and data/.
        values:      Fully merged settings dictionary.
    """

    def __init__(self, project_dir: str, values: dict[str, Any]):
        self.project_dir = project_dir
        self.values = values

    @classmethod
    def load(cls, project_dir: str) -> "ServerSettings":
        """
        Load server.yaml from project_dir and merge it over DEFAULTS.

        A corrupt server.yaml is logged and ignored; the process still starts
        on defaults because none of these values are security relevant.
        """
        path = os.path.join(project_dir, "server.yaml")
        overrides = {}

        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    overrides = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError) as e:
                logger.error("Ignoring unreadable %s: %s", path, e)

        values = _merged(DEFAULTS, overrides)

        if os.environ.get("HOST"):
            values["web"]["host"] = os.environ["HOST"]
        if os.environ.get("PORT"):
            values["web"]["port"] = int(os.environ["PORT"])

        return cls(project_dir, values)

    # -- Convenience accessors ---------------------------------------------------

    @property
    def host(self) -> str:
        return self.values["web"]["host"]

    @property
    def port(self) -> int:
        return int(self.values["web"]["port"])

    @property
    def config_dir(self) -> str:
        return os.path.join(self.project_dir, self.values["paths"]["config_dir"])

    @property
    def data_dir(self) -> str:
        return os.path.join(self.project_dir, self.values["paths"]["data_dir"])

    @property
    def upstream_timeout(self) -> float | None:
        timeout = self.values["upstream"].get("timeout")
        return float(timeout) if timeout is not None else None

    @property
    def demo_base_url(self) -> str:
        return self.values["demo"].get("base_url") or f"http://127.0.0.1:{self.port}"


# -- Helpers ------------------------------------------------------------------

def _merged(defaults: dict, overrides: Any) -> dict:
    """
    Return defaults with overrides layered on top. Nested sections merge key
    by key; a section given as a non-mapping in server.yaml is ignored.
    """
    result = copy.deepcopy(defaults)
    if not isinstance(overrides, dict):
        return result
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, dict):
            if isinstance(value, dict):
                result[key] = _merged(current, value)
            else:
                logger.warning("Ignoring server.yaml section '%s': expected a mapping", key)
        else:
            result[key] = value
    return result
