from __future__ import annotations

import logging
import os

import pytest

from dashboard.errors import ConfigError
from dashboard.migration import (
    CRYPTO_NODES_MIGRATION,
    POOL_URL_MIGRATION,
    MigrationEngine,
    migrate_pool_url,
    needs_crypto_nodes_migration,
    needs_pool_url_migration,
)

from tests.conftest import base_config, read_config, write_config

LEGACY_NODES = [
    {
        "NodeType": "DGB", "NodeName": "DigiByte", "NodeId": "dgb1", "NodeAlgo": "SHA256",
        "NodeDisplayFields": [{"Chain": [{"blocks": "Height"}]}],
    },
    {
        "NodeType": "BTC", "NodeName": "Bitcoin", "NodeId": "btc1", "NodeAlgo": "SHA256",
        "NodeDisplayFields": [{"Network": [{"connections": "Peers"}]}],
    },
]


def _engine(project) -> MigrationEngine:
    return MigrationEngine(str(project / "config"))


def test_string_pool_url_becomes_named_list(project) -> None:
    write_config(project, base_config(mining_core_url="http://pool.local:4000"))

    assert _engine(project).migrate() is True

    assert read_config(project)["mining_core_url"] == [{"Mining Core": "http://pool.local:4000"}]
    assert _engine(project).status()["migrations"] == [POOL_URL_MIGRATION]


def test_pool_url_list_with_bare_strings() -> None:
    config = {"mining_core_url": [{"Main": "http://a.local"}, "http://b.local"]}
    assert needs_pool_url_migration(config)
    assert migrate_pool_url(config)["mining_core_url"] == [
        {"Main": "http://a.local"},
        {"Mining Core 2": "http://b.local"},
    ]


def test_current_pool_shape_is_left_alone() -> None:
    assert not needs_pool_url_migration({"mining_core_url": [{"Pool": "http://pool.local"}]})
    assert not needs_pool_url_migration({"mining_core_url": []})
    assert not needs_pool_url_migration({})


def test_flat_crypto_nodes_are_restructured(project, caplog) -> None:
    write_config(project, base_config(cryptoNodes=LEGACY_NODES))

    with caplog.at_level(logging.WARNING, logger="dashboard.migration"):
        assert _engine(project).migrate() is True

    assert read_config(project)["cryptoNodes"] == [
        {"Nodes": [
            {"NodeType": "DGB", "NodeName": "DigiByte", "NodeId": "dgb1", "NodeAlgo": "SHA256"},
            {"NodeType": "BTC", "NodeName": "Bitcoin", "NodeId": "btc1", "NodeAlgo": "SHA256"},
        ]},
        {"NodeDisplayFields": [{"Chain": [{"blocks": "Height"}]}]},
    ]
    assert any("Bitcoin" in record.getMessage() for record in caplog.records)
    assert _engine(project).status()["migrations"] == [CRYPTO_NODES_MIGRATION]


def test_current_crypto_nodes_shape_is_terminal() -> None:
    assert not needs_crypto_nodes_migration(base_config())
    assert needs_crypto_nodes_migration({"cryptoNodes": LEGACY_NODES})


def test_both_shapes_in_one_pass(project) -> None:
    write_config(project, base_config(mining_core_url="http://pool.local", cryptoNodes=LEGACY_NODES[:1]))

    assert _engine(project).migrate() is True
    assert _engine(project).status()["migrations"] == [POOL_URL_MIGRATION, CRYPTO_NODES_MIGRATION]


def test_migration_is_idempotent(project) -> None:
    write_config(project, base_config(mining_core_url="http://pool.local"))
    engine = _engine(project)
    assert engine.migrate() is True
    migrated = read_config(project)
    assert engine.clear() is True

    assert engine.migrate() is False
    assert read_config(project) == migrated
    assert engine.status() is None


def test_up_to_date_document_writes_no_record(project) -> None:
    assert _engine(project).migrate() is False
    assert not os.path.exists(project / "config" / ".migration_status.json")


def test_missing_document_is_skipped(tmp_path) -> None:
    assert MigrationEngine(str(tmp_path)).migrate() is False


def test_unparsable_document_raises(project) -> None:
    (project / "config" / "config.json").write_text("{nope", encoding="utf-8")
    with pytest.raises(ConfigError):
        _engine(project).migrate()


def test_clear_without_record(project) -> None:
    assert _engine(project).clear() is False
    assert _engine(project).status() is None
