"""
Bitaxe Dashboard - Server Package
==================================
The operator dashboard web server for a fleet of Bitaxe miners.

This package provides:
- FastAPI application wrapping a fixed, ordered route table
- Cookie-based JWT sessions with an authentication gate
- Hot-reloadable JSON configuration with legacy-shape migration
- Concurrent fan-out to every miner, pool and blockchain node

Architecture:
    main.py       -> FastAPI app creation, lifespan, Gateway (server mode)
    dispatcher.py -> Route descriptors, first-match dispatch, error backstop
    routes.py     -> Route tables and all endpoint handlers
    auth.py       -> Session tokens, cookie parsing, auth gate, access.json
    config.py     -> Configuration snapshots and the configuration store
    migration.py  -> Legacy config.json rewrites and the migration notice
    aggregator.py -> Outbound HTTP fan-out, device proxy, JSON-RPC
    bootstrap.py  -> First-run configuration files
    settings.py   -> Process settings (server.yaml)
    context.py    -> Services container and per-request context
    errors.py     -> Exception types
"""
