from __future__ import annotations

import json
import os

import pytest

from dashboard.auth import TokenService

ADMIN_HASH = "8c6976e5b5410415bde908bd4dee15dfb167a9c873fc4bb8a81f6f2ab448a918"  # sha256("admin")
JWT_SECRET = "test-signing-key-0123456789abcdef"


def base_config(**overrides) -> dict:
    config = {
        "bitaxe_dashboard_version": 2.0,
        "title": "Test Fleet",
        "bitaxe_instances": [
            {"Axe 1": "http://axe1.local"},
            {"Axe 2": "http://axe2.local"},
        ],
        "display_fields": [{"Mining Metrics": [{"hashRate": "Hashrate"}]}],
        "mining_core_enabled": False,
        "mining_core_url": [{"Pool": "http://pool.local:4000"}],
        "mining_core_display_fields": [],
        "cryptNodesEnabled": False,
        "cryptoNodes": [{"Nodes": []}, {"NodeDisplayFields": []}],
        "disable_authentication": False,
        "disable_settings": False,
        "disable_configurations": False,
        "demo_mode": False,
    }
    config.update(overrides)
    return config


def write_json_file(path, data) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)


def write_config(project_dir, config: dict) -> None:
    write_json_file(os.path.join(project_dir, "config", "config.json"), config)


def read_config(project_dir) -> dict:
    with open(os.path.join(project_dir, "config", "config.json"), "r", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("HOST", raising=False)
    monkeypatch.delenv("PORT", raising=False)


@pytest.fixture
def project(tmp_path):
    """A configured project directory: config.json, access.json and a key file."""
    write_config(tmp_path, base_config())
    write_json_file(tmp_path / "config" / "access.json", {"admin": ADMIN_HASH})
    write_json_file(
        tmp_path / "config" / "jsonWebTokenKey.json",
        {"jsonWebTokenKey": JWT_SECRET, "expiresIn": "1h"},
    )
    return tmp_path


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(JWT_SECRET, 3600)


@pytest.fixture
def session_headers(tokens) -> dict:
    return {"Cookie": f"sessionToken={tokens.create({'username': 'admin'})}"}
